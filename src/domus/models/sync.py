"""Sync bookkeeping models: audit log and deletion log."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from domus.clock import utcnow


class SyncLog(SQLModel, table=True):
    """Records each sync cycle for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "error"
    full_sync: bool = False
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    error_message: Optional[str] = None


class DeletionLogEntry(SQLModel, table=True):
    """
    One row per local delete of a tracked record.

    A deleted row can no longer carry its own "changed" marker, so the
    tombstone lives here until a push has delivered it.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    record_id: str
    household_id: Optional[str] = None
    deleted_at: datetime = Field(default_factory=utcnow, index=True)
