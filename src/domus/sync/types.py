"""Value types shared by the sync engine components."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from domus.clock import ensure_utc


class ChangeRecord(BaseModel):
    """
    One mutation of one record, in the shape used on the wire:

        {"table": "chores", "id": "chr_...", "data": {...},
         "updatedAt": "2025-01-15T07:30:00Z", "deletedAt": null}

    A record with deleted_at set is a tombstone: only data["id"] and
    data["householdId"] are meaningful.
    """

    table: str
    id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(alias="updatedAt")
    deleted_at: Optional[datetime] = Field(default=None, alias="deletedAt")

    class Config:
        populate_by_name = True

    @field_validator("updated_at", "deleted_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def tombstone(
        cls,
        table: str,
        record_id: str,
        household_id: Optional[str],
        deleted_at: datetime,
    ) -> "ChangeRecord":
        return cls(
            table=table,
            id=record_id,
            data={"id": record_id, "householdId": household_id},
            updated_at=deleted_at,
            deleted_at=deleted_at,
        )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SyncPhase(str, Enum):
    IDLE = "idle"
    GATING = "gating"
    COLLECTING = "collecting"
    PUSHING = "pushing"
    PULLING = "pulling"
    APPLYING = "applying"
    COMMITTING = "committing"
    ERROR = "error"


@dataclass
class PushResult:
    success: bool
    count: int = 0
    error: Optional[str] = None


@dataclass
class PullResult:
    success: bool
    changes: List[ChangeRecord] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CollectionResult:
    changes: List[ChangeRecord] = field(default_factory=list)
    failed_tables: List[str] = field(default_factory=list)


@dataclass
class ApplyReport:
    applied: int = 0
    skipped: int = 0  # unknown tables, incomplete payloads, local kept
    failed: int = 0
    conflicts: int = 0


@dataclass
class MigrationStatus:
    needs_migration: bool
    current_version: int = 0
    missing_tables: List[str] = field(default_factory=list)
    missing_columns: Dict[str, List[str]] = field(default_factory=dict)
    legacy_ids: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class MigrationResult:
    success: bool
    records_migrated: int = 0
    tables_processed: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SyncResult:
    success: bool = False
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    error: Optional[str] = None


@dataclass
class SyncProgress:
    step: str  # "migration", "collecting", "pushing", "pulling", "applying", "complete", "error"
    message: str
    current: Optional[int] = None
    total: Optional[int] = None
    percent: Optional[int] = None


@dataclass
class SyncStatus:
    last_sync_at: Optional[datetime]
    is_syncing: bool
    phase: SyncPhase
    error: Optional[str]
    pending_changes: int
    needs_migration: bool
