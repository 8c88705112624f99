"""Server-side tables for the reference sync remote (api/remote.py)."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class RemoteSession(SQLModel, table=True):
    """Bearer token -> identity. Issued by the (external) auth service."""

    token: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    household_id: Optional[str] = Field(default=None, index=True)


class RemoteChange(SQLModel, table=True):
    """Latest accepted state of one record, as pushed by any household device."""

    __table_args__ = (
        UniqueConstraint("household_id", "table_name", "record_id", name="uq_remote_record"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    household_id: str = Field(default="", index=True)  # "" when the user has no household
    table_name: str
    record_id: str
    operation: str  # "upsert" | "delete"
    data_json: str
    updated_at: datetime = Field(index=True)  # server time of acceptance, UTC
    deleted_at: Optional[datetime] = None
