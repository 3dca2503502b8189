from pydantic import BaseModel
from datetime import datetime
from typing import Literal, Optional


class JobPostingRow(BaseModel):
    """Write-side row produced by a scraper, keyed by ``source_url``."""

    title: str = ""
    company: str = ""
    location: str = ""
    description: str = ""
    status: Optional[str] = "active"
    source_url: str
    pdf_source_url: Optional[str] = None
    pdf_cached_url: Optional[str] = None


class JobUpdate(BaseModel):
    status: Optional[Literal["active", "inactive"]] = None
    pdf_cached_url: Optional[str] = None


class JobResponse(BaseModel):
    id: str
    title: str
    company: str
    location: str
    description: str
    status: str
    source_url: str
    pdf_source_url: Optional[str] = None
    pdf_cached_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int
    page: int
    per_page: int
