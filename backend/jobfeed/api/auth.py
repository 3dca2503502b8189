from fastapi import APIRouter, Depends, Response, HTTPException, status
from jobfeed.schemas import LoginRequest, LoginResponse
from jobfeed.auth import role_for_password, create_session_token, get_current_role, COOKIE_NAME

router = APIRouter()


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest, response: Response):
    role = role_for_password(request.password)
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid password",
        )

    token = create_session_token(role)
    response.set_cookie(
        key=COOKIE_NAME,
        value=token,
        httponly=True,
        max_age=30 * 24 * 60 * 60,  # 30 days
        samesite="lax",
    )
    return LoginResponse(success=True, message="Logged in successfully", role=role)


@router.post("/logout", response_model=LoginResponse)
async def logout(response: Response):
    response.delete_cookie(COOKIE_NAME)
    return LoginResponse(success=True, message="Logged out successfully")


@router.get("/check")
async def check_auth(role: str = Depends(get_current_role)):
    return {"authenticated": True, "role": role}
