# Database models
from tripsync.models.database import (
    UserProfile,
    RewardsProfile,
    Subscription,
    Trip,
)
from tripsync.models.sync_state import SyncState, SyncStatus, ResourceKind

__all__ = [
    "UserProfile",
    "RewardsProfile",
    "Subscription",
    "Trip",
    "SyncState",
    "SyncStatus",
    "ResourceKind",
]
