"""Sync state model - one row per user and resource kind."""

import enum
from sqlalchemy import Column, Integer, String, DateTime, Text

from tripsync.core.clock import utcnow
from tripsync.core.database import Base


class ResourceKind(str, enum.Enum):
    PROFILE = "profile"
    REWARDS = "rewards"
    SUBSCRIPTIONS = "subscriptions"
    TRIPS = "trips"


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncState(Base):
    """Sync bookkeeping for a resource kind.

    A row left in "syncing" (e.g. after a crash) is resumable; it does not
    mean a sync is actually running.
    """

    __tablename__ = "sync_state"

    user_id = Column(String, primary_key=True)
    key = Column(String, primary_key=True)  # ResourceKind value
    last_synced_at = Column(DateTime, nullable=True)
    next_sync_after = Column(DateTime, nullable=True)  # None = never expires
    status = Column(String, nullable=False, default=SyncStatus.IDLE.value)
    error = Column(Text, nullable=True)
    cursor = Column(String, nullable=True)
    total_records = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
