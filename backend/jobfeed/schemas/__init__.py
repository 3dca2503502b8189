from jobfeed.schemas.job import JobPostingRow, JobUpdate, JobResponse, JobListResponse
from jobfeed.schemas.scrape import (
    RunProgressSnapshot,
    ScrapeHistoryEntry,
    SourceScrapeStats,
    ScrapeControlRequest,
    ManagedSource,
    ManagedSourceCreate,
    ManagedSourcePatch,
)
from jobfeed.schemas.auth import LoginRequest, LoginResponse

__all__ = [
    "JobPostingRow",
    "JobUpdate",
    "JobResponse",
    "JobListResponse",
    "RunProgressSnapshot",
    "ScrapeHistoryEntry",
    "SourceScrapeStats",
    "ScrapeControlRequest",
    "ManagedSource",
    "ManagedSourceCreate",
    "ManagedSourcePatch",
    "LoginRequest",
    "LoginResponse",
]
