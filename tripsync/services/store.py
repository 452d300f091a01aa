"""Local store - repository over the SQLite session factory.

Every read and write goes through ``transaction()``. Transactions are
serialized, so a reader never sees a SyncState update without the data it
describes, and two writers never interleave.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tripsync.models.database import (
    TRIP_FACTUAL_COLUMNS,
    RewardsProfile,
    Subscription,
    Trip,
    UserProfile,
)
from tripsync.models.sync_state import SyncState, SyncStatus

logger = logging.getLogger(__name__)

# Incoming values that mean "unknown" and must not replace a stored one
_KEEP_IF_ZERO = ("start_lat", "start_lon", "end_lat", "end_lon")
_KEEP_IF_NULL = ("start_station_name", "end_station_name", "distance", "angel_points", "cost")


class LocalStore:
    """Keyed, indexed store for profile, rewards, subscription, trips and sync state."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one transaction; commit on exit, roll back on error.

        Not re-entrant: do not open a transaction while holding another.
        """
        async with self._lock:
            async with self.session_maker() as session:
                async with session.begin():
                    yield session

    # Sync state

    async def get_sync_state(self, session: AsyncSession, user_id: str, key: str) -> Optional[SyncState]:
        return await session.get(SyncState, (user_id, key))

    async def put_sync_state(self, session: AsyncSession, user_id: str, key: str, **fields: Any) -> SyncState:
        """Create or update the sync state row for (user_id, key)."""
        state = await session.get(SyncState, (user_id, key))
        if state is None:
            state = SyncState(user_id=user_id, key=key, status=SyncStatus.IDLE.value)
            session.add(state)
        for name, value in fields.items():
            setattr(state, name, value)
        await session.flush()
        return state

    async def list_sync_states(self, session: AsyncSession, user_id: str) -> list[SyncState]:
        result = await session.execute(
            select(SyncState).where(SyncState.user_id == user_id).order_by(SyncState.key)
        )
        return list(result.scalars().all())

    # Single-row resources

    async def _replace(self, session: AsyncSession, record):
        return await session.merge(record)

    async def put_profile(self, session: AsyncSession, profile: UserProfile) -> UserProfile:
        return await self._replace(session, profile)

    async def put_rewards(self, session: AsyncSession, rewards: RewardsProfile) -> RewardsProfile:
        return await self._replace(session, rewards)

    async def put_subscription(self, session: AsyncSession, subscription: Subscription) -> Subscription:
        return await self._replace(session, subscription)

    async def get_profile(self, session: AsyncSession, user_id: str) -> Optional[UserProfile]:
        return await session.get(UserProfile, user_id)

    async def get_rewards(self, session: AsyncSession, user_id: str) -> Optional[RewardsProfile]:
        return await session.get(RewardsProfile, user_id)

    async def get_subscription(self, session: AsyncSession, user_id: str) -> Optional[Subscription]:
        return await session.get(Subscription, user_id)

    # Trips

    async def bulk_upsert_trips(self, session: AsyncSession, trips: Iterable[dict[str, Any]]) -> int:
        """Insert or update trips keyed by id.

        Only factual columns are written on conflict. Zero coordinates and
        missing names/distances never overwrite stored values, and the
        sync-derived columns are left alone.
        """
        rows = list(trips)
        if not rows:
            return 0

        table = Trip.__table__
        for row in rows:
            data = {"id": row["id"]}
            for name in TRIP_FACTUAL_COLUMNS:
                if name in row:
                    data[name] = row[name]

            stmt = insert(table).values(**data)
            excluded = stmt.excluded
            set_ = {}
            for name in data:
                if name == "id":
                    continue
                if name in _KEEP_IF_ZERO:
                    set_[name] = func.coalesce(func.nullif(excluded[name], 0), table.c[name])
                elif name in _KEEP_IF_NULL:
                    set_[name] = func.coalesce(excluded[name], table.c[name])
                else:
                    set_[name] = excluded[name]

            stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=set_)
            await session.execute(stmt)

        return len(rows)

    async def get_trip(self, session: AsyncSession, trip_id: str) -> Optional[Trip]:
        return await session.get(Trip, trip_id)

    async def update_trip(self, session: AsyncSession, trip_id: str, **fields: Any) -> Optional[Trip]:
        trip = await session.get(Trip, trip_id)
        if trip is None:
            logger.warning(f"Trip {trip_id} vanished before update")
            return None
        for name, value in fields.items():
            setattr(trip, name, value)
        await session.flush()
        return trip

    async def trips_needing_details(
        self, session: AsyncSession, user_id: str, limit: Optional[int] = None
    ) -> list[Trip]:
        """Trips without fetched details and without usable geometry."""
        stmt = (
            select(Trip)
            .where(
                Trip.user_id == user_id,
                or_(Trip.details_fetched.is_(None), Trip.details_fetched.is_(False)),
                or_(
                    Trip.polyline.is_(None),
                    Trip.polyline == "",
                    Trip.has_actual_coordinates.is_not(True),
                    _degenerate(Trip.start_lat),
                    _degenerate(Trip.start_lon),
                    _degenerate(Trip.end_lat),
                    _degenerate(Trip.end_lon),
                ),
            )
            .order_by(Trip.start_time, Trip.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def trips_in_range(
        self,
        session: AsyncSession,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Trip]:
        stmt = select(Trip).where(Trip.user_id == user_id)
        if start is not None:
            stmt = stmt.where(Trip.start_time >= start)
        if end is not None:
            stmt = stmt.where(Trip.start_time <= end)
        result = await session.execute(stmt.order_by(Trip.start_time))
        return list(result.scalars().all())

    async def count_trips(self, session: AsyncSession, user_id: str, *criteria) -> int:
        """Count a user's trips, optionally filtered by extra SQL criteria."""
        stmt = select(func.count()).select_from(Trip).where(Trip.user_id == user_id, *criteria)
        return (await session.execute(stmt)).scalar_one()

    async def stats(self, session: AsyncSession, user_id: str) -> dict[str, Any]:
        return {
            "total_trips": await self.count_trips(session, user_id),
            "trips_with_details": await self.count_trips(session, user_id, Trip.details_fetched.is_(True)),
            "trips_with_errors": await self.count_trips(session, user_id, Trip.details_fetch_error.is_not(None)),
            "profile_synced": await self.get_profile(session, user_id) is not None,
            "rewards_synced": await self.get_rewards(session, user_id) is not None,
            "subscription_synced": await self.get_subscription(session, user_id) is not None,
        }

    async def clear_user_data(self, session: AsyncSession, user_id: str) -> None:
        """Full local wipe for a user (logout)."""
        await session.execute(delete(UserProfile).where(UserProfile.id == user_id))
        await session.execute(delete(RewardsProfile).where(RewardsProfile.user_id == user_id))
        await session.execute(delete(Subscription).where(Subscription.user_id == user_id))
        await session.execute(delete(Trip).where(Trip.user_id == user_id))
        await session.execute(delete(SyncState).where(SyncState.user_id == user_id))
        logger.info(f"Cleared local data for user {user_id}")


def _degenerate(column):
    return or_(column.is_(None), column == 0)

