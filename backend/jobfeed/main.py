"""
Job Feed API - Main Application Entry Point

This module initializes the FastAPI application with:
- Database connection and schema initialization
- Background scheduler that auto-triggers scrape runs
- Prometheus metrics middleware and /metrics endpoint
- API router registration

Architecture:
    FastAPI App
    ├── Lifespan Management (startup/shutdown)
    ├── CORS Middleware (localhost:3000)
    ├── Prometheus Middleware (/metrics)
    └── API Router
        ├── /auth   - Session login/logout
        ├── /jobs   - Job postings (admin)
        └── /scrape - Scrape control, history, sources, cron trigger
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jobfeed.auth import ForbiddenError
from jobfeed.database import init_db
from jobfeed.api import api_router
from jobfeed.middleware import setup_metrics
from jobfeed.scheduler import start_scheduler, stop_scheduler
from jobfeed.services.orchestrator import drain_background_tasks, get_orchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.

    Startup:
        1. Initialize database tables
        2. Start the scrape scheduler tick

    Shutdown:
        1. Stop the scheduler
        2. Ask an in-flight run to stop at its next source boundary
           and give it a grace period to record its terminal state
    """
    await init_db()
    start_scheduler()
    yield
    stop_scheduler()
    get_orchestrator().cancel_local()
    await drain_background_tasks(SHUTDOWN_GRACE_SECONDS)


app = FastAPI(
    title="Job Feed API",
    description="Job posting ingestion and scrape control API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_metrics(app)


@app.exception_handler(ForbiddenError)
async def forbidden_handler(request: Request, exc: ForbiddenError):
    return JSONResponse(
        {"error": "forbidden"},
        status_code=403,
        headers={"Cache-Control": "no-store"},
    )


app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
