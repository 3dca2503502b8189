"""
Job Model - SQLAlchemy ORM model for scraped job postings

Rows are keyed by their natural key, ``source_url``. The scrape
pipeline upserts on that column, so re-running a scrape never creates
duplicates.

Status Flow:
    active ⇄ inactive (manual deactivation survives later re-scrapes)
"""

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from jobfeed.database import Base
import uuid


JOB_STATUSES = ("active", "inactive")


class JobPosting(Base):
    """
    Job posting entity.

    Attributes:
        id: UUID primary key
        title: Job title
        company: Company name (host-derived fallback when unknown)
        location: Job location ("Unknown" when empty)
        description: Trimmed description text
        status: "active" or "inactive" (server default, optional column)
        source_url: Canonical posting URL (unique natural key)
        pdf_source_url: Remote PDF referenced by the posting, if any
        pdf_cached_url: Public URL of the mirrored PDF, if cached
    """

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(500), nullable=False)
    company = Column(String(500), nullable=False)
    location = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, server_default="")
    # server_default keeps "status" out of INSERTs that omit it
    status = Column(String(20), nullable=False, server_default="active", index=True)
    source_url = Column(String(2000), nullable=False, unique=True)
    pdf_source_url = Column(String(2000), nullable=True, index=True)
    pdf_cached_url = Column(String(2000), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
