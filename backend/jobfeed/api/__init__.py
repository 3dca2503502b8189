from fastapi import APIRouter
from jobfeed.api import auth, jobs, scrape

api_router = APIRouter()
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(scrape.router, prefix="/scrape", tags=["scrape"])
