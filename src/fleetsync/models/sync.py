"""Sync bookkeeping models: per-entity state and the append-only run log."""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

# SyncState.status values
STATUS_IDLE = "idle"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def utc_now() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncState(SQLModel, table=True):
    """One row per (user, entity type): where the last run left things."""

    __table_args__ = (UniqueConstraint("user_id", "entity_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    entity_type: str = Field(index=True)  # "work_items", "assets", "flows"

    last_sync_at: Optional[datetime] = None
    last_sync_cursor: Optional[str] = None  # reserved for delta sync, not consumed yet
    last_sync_count: int = 0
    total_synced: int = 0

    status: str = STATUS_IDLE
    error_message: Optional[str] = None
    error_count: int = 0
    last_error_at: Optional[datetime] = None

    updated_at: datetime = Field(default_factory=utc_now)


class SyncLog(SQLModel, table=True):
    """Records each sync run for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    entity_type: str = Field(index=True)
    operation: str  # "full_sync", "incremental", "historic"
    status: str = "started"  # "started", "completed", "failed"

    items_fetched: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_failed: int = 0

    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
