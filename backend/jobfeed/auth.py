import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from jobfeed.config import get_settings

ALGORITHM = "HS256"
TOKEN_EXPIRE_DAYS = 30
COOKIE_NAME = "session_token"

ROLE_ADMIN = "admin"
ROLE_USER = "user"


class ForbiddenError(Exception):
    """Caller has no session or lacks the required role."""


def create_session_token(role: str) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(days=TOKEN_EXPIRE_DAYS)
    to_encode = {"exp": expire, "authenticated": True, "role": role}
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def session_role(token: str) -> Optional[str]:
    """Role carried by a valid session token, else None."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not payload.get("authenticated", False):
        return None
    role = payload.get("role")
    return role if role in (ROLE_ADMIN, ROLE_USER) else None


def role_for_password(password: str) -> Optional[str]:
    settings = get_settings()
    candidate = (password or "").encode("utf-8")
    if settings.admin_password and hmac.compare_digest(candidate, settings.admin_password.encode("utf-8")):
        return ROLE_ADMIN
    if settings.app_password and hmac.compare_digest(candidate, settings.app_password.encode("utf-8")):
        return ROLE_USER
    return None


async def get_current_role(request: Request) -> str:
    token = request.cookies.get(COOKIE_NAME)
    role = session_role(token) if token else None
    if role is None:
        raise ForbiddenError()
    return role


async def require_admin(request: Request) -> str:
    role = await get_current_role(request)
    if role != ROLE_ADMIN:
        raise ForbiddenError()
    return role
