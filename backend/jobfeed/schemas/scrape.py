"""
Scrape run-state schemas

Wire shapes are camelCase (``runId``, ``processedSources`` ...) because
polling clients read them directly from the status endpoint.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator
from pydantic.alias_generators import to_camel

RunTrigger = Literal["manual", "auto"]
RunState = Literal["idle", "running", "success", "failed", "cancelled", "skipped"]
TerminalState = Literal["success", "failed", "cancelled", "skipped"]
SourceType = Literal["linkedin", "generic", "auto"]

RUN_STATES = ("idle", "running", "success", "failed", "cancelled", "skipped")


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class RunProgressSnapshot(CamelModel):
    """Single current-state record for the in-flight or last run."""

    run_id: str
    trigger: RunTrigger = "manual"
    state: RunState = "idle"
    started_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    total_sources: int = 0
    processed_sources: int = 0
    current_source: Optional[str] = None
    last_completed_source: Optional[str] = None
    lookback_days: int = 10
    cancel_requested: bool = False
    inserted: Optional[int] = None
    updated: Optional[int] = None
    skipped_duplicates: Optional[int] = None
    message: Optional[str] = None

    @field_validator("trigger", mode="before")
    @classmethod
    def _coerce_trigger(cls, value: Any) -> str:
        return value if value in ("manual", "auto") else "manual"

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> str:
        return value if value in RUN_STATES else "idle"

    @field_validator("total_sources", "processed_sources", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return 0

    @classmethod
    def from_stored(cls, raw: Any) -> Optional["RunProgressSnapshot"]:
        """Parse a stored value, returning None for anything malformed."""
        if not isinstance(raw, dict):
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return None

    def to_stored(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ScrapeHistoryEntry(CamelModel):
    run_id: str
    trigger: RunTrigger
    status: TerminalState
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0
    completion_percent: int = 0
    processed_sources: int = 0
    total_sources: int = 0
    inserted: int = 0
    updated: int = 0
    skipped_duplicates: int = 0
    skip_reason: Optional[str] = None
    error_message: Optional[str] = None


class SourceScrapeStats(CamelModel):
    source: str
    fetched: bool = False
    containers_scanned: int = 0
    extracted: int = 0
    filtered_by_location: int = 0
    filtered_by_date: int = 0
    parse_errors: int = 0
    inserted: int = 0
    updated: int = 0
    skipped_duplicates: int = 0
    failed: bool = False
    error_message: Optional[str] = None


class ScrapeControlRequest(BaseModel):
    action: str = "start"


class ManagedSource(CamelModel):
    id: str
    name: str
    url: str
    type: SourceType = "auto"
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class ManagedSourceCreate(BaseModel):
    id: Optional[str] = None
    name: str = ""
    url: str
    type: Optional[str] = None
    enabled: bool = True


class ManagedSourcePatch(BaseModel):
    enabled: bool
