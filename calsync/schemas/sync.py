# calsync/schemas/sync.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from calsync.core.constants import SyncStatus


class SyncRequest(BaseModel):
    """Optional window for a manual sync; defaults come from settings."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.since and self.until and self.until <= self.since:
            raise ValueError("until must be after since")
        return self


class SyncError(BaseModel):
    """One per-event (or per-page) failure recorded during a pass."""

    event_id: Optional[str] = None
    message: str


class SyncOutcome(BaseModel):
    """
    Aggregate result of a reconciliation pass.

    Returned for every pass, including failed ones: ``status`` tells callers
    whether the pass completed (``ok``), ran without destructive decisions
    because part of the window could not be read (``partial``), should be
    retried (``retry``), or could not run at all (``error``).
    """

    account_id: Optional[int] = None
    created: int = 0
    updated: int = 0
    deleted_count: int = 0
    skipped: int = 0
    unchanged: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    summary: str = ""
    status: str = SyncStatus.OK
    partial: bool = False

    def add_error(self, message: str, event_id: Optional[str] = None) -> None:
        self.errors.append(SyncError(event_id=event_id, message=message))

    @property
    def retryable(self) -> bool:
        return self.status == SyncStatus.RETRY

    def build_summary(self) -> str:
        parts = [
            f"{self.created} created",
            f"{self.updated} updated",
            f"{self.deleted_count} deleted",
            f"{self.skipped} skipped",
        ]
        if self.errors:
            parts.append(f"{len(self.errors)} errors")
        summary = ", ".join(parts)
        if self.partial:
            summary += " (partial: deletions skipped)"
        return summary


class SyncAllResponse(BaseModel):
    results: List[SyncOutcome]
