"""Sync orchestration - keeps the local store in step with the bikeshare API.

Profile, rewards and subscriptions use stale-while-revalidate: a sync inside
the kind's TTL is a no-op. Trip history is paged with a resumable cursor.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from tripsync.core.clock import utcnow
from tripsync.models.database import RewardsProfile, Subscription, UserProfile
from tripsync.models.sync_state import ResourceKind, SyncState, SyncStatus
from tripsync.services.backfill import BackfillResult, DetailBackfillJob, notify
from tripsync.services.citibike import CitibikeClient, parse_timestamp
from tripsync.services.store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_TTLS = {
    ResourceKind.PROFILE: timedelta(hours=1),
    ResourceKind.REWARDS: timedelta(minutes=5),
    ResourceKind.SUBSCRIPTIONS: timedelta(hours=1),
}


def _as_dict(value: Any) -> dict[str, Any]:
    """Nested payload object, or {} when the API sent another shape."""
    return value if isinstance(value, dict) else {}


@dataclass
class TripSyncResult:
    total_synced: int
    has_more: bool
    pages: int


@dataclass
class _Resource:
    """How to fetch one resource kind and turn the payload into a record."""
    fetch: Callable[[], Awaitable[dict[str, Any]]]
    build: Callable[[dict[str, Any], datetime], Any]
    put: Callable[..., Awaitable[Any]]


class SyncService:
    """Orchestrates syncing a rider's data from the bikeshare API."""

    def __init__(
        self,
        client: CitibikeClient,
        store: LocalStore,
        user_id: str,
        ttls: Optional[dict[ResourceKind, timedelta]] = None,
        retry_window: timedelta = timedelta(seconds=60),
        max_pages: int = 100,
        clock: Callable[[], datetime] = utcnow,
        backfill: Optional[DetailBackfillJob] = None,
    ):
        self.client = client
        self.store = store
        self.user_id = user_id
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.retry_window = retry_window
        self.max_pages = max_pages
        self.clock = clock
        self.backfill = backfill or DetailBackfillJob(client, store, user_id, clock=clock)

        self._resources = {
            ResourceKind.PROFILE: _Resource(client.get_profile, self._build_profile, store.put_profile),
            ResourceKind.REWARDS: _Resource(client.get_rewards, self._build_rewards, store.put_rewards),
            ResourceKind.SUBSCRIPTIONS: _Resource(
                client.get_subscriptions, self._build_subscription, store.put_subscription
            ),
        }

    # Record builders

    def _build_profile(self, body: dict[str, Any], now: datetime) -> UserProfile:
        user = body["user"]
        return UserProfile(
            id=self.user_id or str(user.get("id")),
            email=user.get("email") or "",
            first_name=user.get("firstName") or "",
            last_name=user.get("lastName") or "",
            phone_number=user.get("phoneNumber") or "",
            membership_type=user.get("membershipType") or "member",
            member_since=user.get("memberSince"),
            rides_taken=user.get("ridesTaken"),
            region=user.get("region"),
            user_photo=user.get("userPhoto"),
            referral_code=user.get("referralCode"),
            last_synced_at=now,
        )

    def _build_rewards(self, body: dict[str, Any], now: datetime) -> RewardsProfile:
        profile = _as_dict(body.get("profile"))
        return RewardsProfile(
            user_id=self.user_id,
            total_points=profile.get("totalPoints") or 0,
            current_level=profile.get("currentLevel") or "",
            points_to_next_level=profile.get("pointsToNextLevel") or 0,
            lifetime_points=profile.get("lifetimePoints") or 0,
            current_streak=profile.get("currentStreak") or 0,
            longest_streak=profile.get("longestStreak") or 0,
            rides_this_month=profile.get("ridesThisMonth") or 0,
            points_this_month=profile.get("pointsThisMonth") or 0,
            achievements=profile.get("achievements") or [],
            raw_data=body.get("rawData") or {},
            last_synced_at=now,
        )

    def _build_subscription(self, body: dict[str, Any], now: datetime) -> Subscription:
        subscription = _as_dict(body.get("subscriptions"))
        return Subscription(
            user_id=self.user_id,
            plan_name=subscription.get("plan_name") or "Unknown",
            status=subscription.get("status") or "active",
            expires_at=parse_timestamp(subscription.get("expires_at")),
            raw_data=body.get("rawData") or {},
            last_synced_at=now,
        )

    # Resource Sync Coordinator

    async def sync(self, kind: ResourceKind | str, force: bool = False) -> SyncState:
        """
        Sync one single-record resource (profile, rewards or subscriptions).

        Returns the resulting sync state. Inside the TTL window and without
        force, no request is made. Failures mark the state as error with a
        short retry window and are re-raised.
        """
        kind = ResourceKind(kind)
        if kind not in self._resources:
            raise ValueError(f"{kind.value} is not a single-record resource, use sync_trips()")
        resource = self._resources[kind]

        async with self.store.transaction() as session:
            state = await self.store.get_sync_state(session, self.user_id, kind.value)
            now = self.clock()
            if (
                not force
                and state is not None
                and state.next_sync_after is not None
                and now < state.next_sync_after
            ):
                logger.debug(f"{kind.value} is fresh until {state.next_sync_after}, skipping")
                return state

            last_synced_at = state.last_synced_at if state else None
            await self.store.put_sync_state(
                session, self.user_id, kind.value,
                status=SyncStatus.SYNCING.value,
                last_synced_at=last_synced_at,
            )

        logger.info(f"Syncing {kind.value}")
        try:
            body = await resource.fetch()
            now = self.clock()
            record = resource.build(body, now)

            async with self.store.transaction() as session:
                await resource.put(session, record)
                state = await self.store.put_sync_state(
                    session, self.user_id, kind.value,
                    status=SyncStatus.IDLE.value,
                    last_synced_at=now,
                    next_sync_after=now + self.ttls[kind],
                    error=None,
                )
        except Exception as e:
            logger.error(f"{kind.value} sync failed: {e}")
            await self._mark_error(kind, e, last_synced_at, next_sync_after=self.clock() + self.retry_window)
            raise

        logger.info(f"{kind.value} synced, fresh until {state.next_sync_after}")
        return state

    async def sync_profile(self, force: bool = False) -> SyncState:
        return await self.sync(ResourceKind.PROFILE, force)

    async def sync_rewards(self, force: bool = False) -> SyncState:
        return await self.sync(ResourceKind.REWARDS, force)

    async def sync_subscriptions(self, force: bool = False) -> SyncState:
        return await self.sync(ResourceKind.SUBSCRIPTIONS, force)

    async def _mark_error(
        self,
        kind: ResourceKind,
        error: Exception,
        last_synced_at: Optional[datetime],
        **fields: Any,
    ) -> None:
        async with self.store.transaction() as session:
            await self.store.put_sync_state(
                session, self.user_id, kind.value,
                status=SyncStatus.ERROR.value,
                error=str(error) or type(error).__name__,
                last_synced_at=last_synced_at,
                **fields,
            )

    async def needs_sync(self) -> dict[str, bool]:
        """Which single-record resources are past their TTL (or never synced)."""
        now = self.clock()
        async with self.store.transaction() as session:
            result = {}
            for kind in self._resources:
                state = await self.store.get_sync_state(session, self.user_id, kind.value)
                result[kind.value] = (
                    state is None
                    or state.next_sync_after is None
                    or now >= state.next_sync_after
                )
        return result

    # Incremental Trip Sync

    async def sync_trips(
        self,
        on_progress: Optional[Callable[[dict[str, Any]], Any]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> TripSyncResult:
        """
        Page through trip history from the stored cursor.

        Each page is upserted together with the advanced cursor before the
        next page is requested, so an interrupted run resumes where it left
        off. Stops after max_pages regardless of has_more.
        """
        key = ResourceKind.TRIPS.value

        async with self.store.transaction() as session:
            state = await self.store.get_sync_state(session, self.user_id, key)
            cursor = state.cursor if state else None
            last_synced_at = state.last_synced_at if state else None
            await self.store.put_sync_state(
                session, self.user_id, key,
                status=SyncStatus.SYNCING.value,
                last_synced_at=last_synced_at,
            )

        logger.info(f"Syncing trips from cursor {cursor!r}")
        total_synced = 0
        page = 0
        has_more = True

        try:
            while has_more:
                if stop_event is not None and stop_event.is_set():
                    logger.info(f"Trip sync stopped by request after {page} pages")
                    break
                if page >= self.max_pages:
                    logger.warning(f"Reached maximum page limit ({self.max_pages}). Stopping pagination.")
                    break

                page += 1
                previous_cursor = cursor
                result = await self.client.get_trip_history(cursor, self.user_id)

                async with self.store.transaction() as session:
                    count = await self.store.bulk_upsert_trips(session, result.trips)
                    has_more = result.has_more
                    cursor = result.next_cursor
                    await self.store.put_sync_state(
                        session, self.user_id, key,
                        cursor=cursor if has_more else None,
                    )

                total_synced += count
                logger.info(f"Synced page {page}: {count} trips")
                notify(on_progress, {"page": page, "total_synced": total_synced})

                if has_more and (not cursor or cursor == previous_cursor):
                    logger.warning(f"Page {page} reported more trips without advancing the cursor. Stopping pagination.")
                    break

            now = self.clock()
            async with self.store.transaction() as session:
                total_records = await self.store.count_trips(session, self.user_id)
                await self.store.put_sync_state(
                    session, self.user_id, key,
                    status=SyncStatus.IDLE.value,
                    last_synced_at=now,
                    next_sync_after=None,
                    cursor=cursor if has_more else None,
                    total_records=total_records,
                    error=None,
                )
        except Exception as e:
            logger.error(f"Trip sync failed on page {page}: {e}")
            # The cursor of the last fully stored page stays in place
            await self._mark_error(ResourceKind.TRIPS, e, last_synced_at)
            raise

        logger.info(f"Trip sync complete: {total_synced} trips over {page} pages (has_more={has_more})")
        return TripSyncResult(total_synced=total_synced, has_more=has_more, pages=page)

    # Detail backfill

    async def sync_trip_details(
        self,
        on_progress: Optional[Callable[[dict[str, Any]], Any]] = None,
        rate_limit_ms: int = 500,
        batch_size: int = 1,
        max_trips: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> BackfillResult:
        return await self.backfill.run(
            on_progress,
            rate_limit_ms=rate_limit_ms,
            batch_size=batch_size,
            max_trips=max_trips,
            stop_event=stop_event,
        )

    async def sync_all(
        self,
        on_progress: Optional[Callable[[str, Any], Any]] = None,
        fetch_trip_details: bool = False,
        details_rate_limit_ms: int = 500,
        details_batch_size: int = 1,
        details_max_trips: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> dict[str, Any]:
        """
        Sync profile, rewards, subscriptions and trips, then optionally backfill details.

        Returns:
            Summary dict keyed by resource kind.
        """
        summary: dict[str, Any] = {}

        for kind in (ResourceKind.PROFILE, ResourceKind.REWARDS, ResourceKind.SUBSCRIPTIONS):
            notify(on_progress, kind.value, {"status": SyncStatus.SYNCING.value})
            state = await self.sync(kind)
            summary[kind.value] = state.status

        notify(on_progress, ResourceKind.TRIPS.value, {"status": SyncStatus.SYNCING.value})
        trips = await self.sync_trips(
            lambda progress: notify(on_progress, ResourceKind.TRIPS.value, progress),
            stop_event=stop_event,
        )
        summary["trips"] = {"total_synced": trips.total_synced, "has_more": trips.has_more}

        if fetch_trip_details:
            notify(on_progress, "trip_details", {"status": SyncStatus.SYNCING.value})
            details = await self.sync_trip_details(
                lambda progress: notify(on_progress, "trip_details", progress),
                rate_limit_ms=details_rate_limit_ms,
                batch_size=details_batch_size,
                max_trips=details_max_trips,
                stop_event=stop_event,
            )
            summary["trip_details"] = {
                "fetched": details.fetched,
                "failed": details.failed,
                "skipped": details.skipped,
                "stopped_early": details.stopped_early,
            }

        logger.info(f"All data synced: {summary}")
        return summary


def create_sync_service(settings, client: CitibikeClient, store: LocalStore) -> SyncService:
    """Build a SyncService for the configured rider from settings."""
    backfill = DetailBackfillJob(
        client,
        store,
        settings.user_id,
        max_backoff_ms=settings.details_max_backoff_ms,
        rate_limit_strikes=settings.details_rate_limit_strikes,
    )
    return SyncService(
        client,
        store,
        settings.user_id,
        ttls={
            ResourceKind.PROFILE: timedelta(seconds=settings.profile_ttl_seconds),
            ResourceKind.REWARDS: timedelta(seconds=settings.rewards_ttl_seconds),
            ResourceKind.SUBSCRIPTIONS: timedelta(seconds=settings.subscriptions_ttl_seconds),
        },
        retry_window=timedelta(seconds=settings.sync_retry_seconds),
        max_pages=settings.trip_sync_max_pages,
        backfill=backfill,
    )
