"""Trip details backfill - fetches missing geometry per trip with adaptive backoff.

Trips arrive from the history feed without a route. This job fetches the
per-trip detail endpoint in small concurrent batches, doubling the pause
between batches while the API rate-limits and giving up for this run after
a fixed number of consecutive rate-limited batches.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from tripsync.core.clock import utcnow
from tripsync.models.database import Trip
from tripsync.services.citibike import CitibikeClient, FetchErrorKind, RemoteAPIError
from tripsync.services.store import LocalStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float, Optional[asyncio.Event]], Awaitable[None]]


def notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a progress observer; its failures never affect the sync."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.warning(f"Progress callback raised {type(e).__name__}: {e}")


async def interruptible_sleep(seconds: float, stop_event: Optional[asyncio.Event] = None) -> None:
    """Sleep for seconds, returning early if stop_event is set."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


@dataclass
class BackfillResult:
    fetched: int
    failed: int
    skipped: int
    stopped_early: bool = False
    backoff_ms: int = 0


@dataclass
class _Outcome:
    trip_id: str
    success: bool
    error_kind: Optional[FetchErrorKind] = None

    @property
    def rate_limited(self) -> bool:
        return self.error_kind is FetchErrorKind.RATE_LIMITED


class DetailBackfillJob:
    """Backfills polyline and station coordinates for trips still missing them."""

    def __init__(
        self,
        client: CitibikeClient,
        store: LocalStore,
        user_id: str,
        clock: Callable[[], datetime] = utcnow,
        sleep: SleepFn = interruptible_sleep,
        max_backoff_ms: int = 10_000,
        rate_limit_strikes: int = 3,
    ):
        self.client = client
        self.store = store
        self.user_id = user_id
        self.clock = clock
        self.sleep = sleep
        self.max_backoff_ms = max_backoff_ms
        self.rate_limit_strikes = rate_limit_strikes

    async def run(
        self,
        on_progress: Optional[Callable[[dict[str, Any]], Any]] = None,
        rate_limit_ms: int = 500,
        batch_size: int = 1,
        max_trips: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> BackfillResult:
        """
        Fetch details for every trip that still needs them.

        Args:
            on_progress: Observer called once per batch
            rate_limit_ms: Base pause between batches
            batch_size: Trips fetched concurrently per batch
            max_trips: Cap on trips attempted this run
            stop_event: Stops the job between batches when set

        Returns:
            Counts of fetched, failed and untouched (skipped) trips.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        async with self.store.transaction() as session:
            trips = await self.store.trips_needing_details(session, self.user_id, limit=max_trips)

        total = len(trips)
        fetched = 0
        failed = 0
        strikes = 0
        backoff_ms = rate_limit_ms
        stopped_early = False

        logger.info(f"Starting trip details backfill: {total} trips to fetch")

        for start in range(0, total, batch_size):
            if stop_event is not None and stop_event.is_set():
                logger.info("Trip details backfill stopped by request")
                break

            batch = trips[start:start + batch_size]
            results = await asyncio.gather(
                *(self._fetch_one(trip) for trip in batch), return_exceptions=True
            )
            outcomes = [await self._settle(trip, result) for trip, result in zip(batch, results)]

            batch_rate_limited = False
            for outcome in outcomes:
                if outcome.success:
                    fetched += 1
                else:
                    failed += 1
                    batch_rate_limited = batch_rate_limited or outcome.rate_limited

            if batch_rate_limited:
                strikes += 1
                backoff_ms = min(backoff_ms * 2, self.max_backoff_ms)
                logger.warning(f"Rate limit detected in batch. Increasing backoff to {backoff_ms}ms")
            else:
                strikes = 0
                backoff_ms = rate_limit_ms

            notify(on_progress, {
                "total": total,
                "completed": fetched,
                "failed": failed,
                "current": batch[0].id,
            })

            if strikes >= self.rate_limit_strikes:
                stopped_early = True
                logger.warning(
                    f"Rate limited {strikes} batches in a row, stopping. "
                    f"{fetched} fetched, {failed} failed, {total - fetched - failed} remaining"
                )
                break

            if start + batch_size < total:
                await self.sleep(backoff_ms / 1000, stop_event)

        skipped = total - fetched - failed
        logger.info(f"Trip details backfill complete: {fetched} fetched, {failed} failed, {skipped} skipped")
        return BackfillResult(
            fetched=fetched,
            failed=failed,
            skipped=skipped,
            stopped_early=stopped_early,
            backoff_ms=backoff_ms,
        )

    async def _settle(self, trip: Trip, result: Any) -> _Outcome:
        """Outcome of one fetch; a fetch that raised counts as an UNKNOWN_ERROR failure."""
        if isinstance(result, _Outcome):
            return result
        if isinstance(result, asyncio.CancelledError):
            raise result

        logger.error(f"Details backfill for trip {trip.id} failed: {type(result).__name__}: {result}")
        try:
            await self._record_failure(trip.id, "UNKNOWN_ERROR")
        except Exception as e:
            logger.error(f"Could not record failure for trip {trip.id}: {e}")
        return _Outcome(trip.id, False, FetchErrorKind.UNKNOWN)

    async def _fetch_one(self, trip: Trip) -> _Outcome:
        try:
            detail = await self.client.get_trip_detail(trip.id)
        except RemoteAPIError as e:
            logger.error(f"Failed to fetch details for trip {trip.id}: {e}")
            await self._record_failure(trip.id, e.error_code)
            return _Outcome(trip.id, False, e.kind)
        except Exception as e:
            logger.error(f"Unexpected error fetching details for trip {trip.id}: {type(e).__name__}: {e}")
            await self._record_failure(trip.id, "UNKNOWN_ERROR")
            return _Outcome(trip.id, False, FetchErrorKind.UNKNOWN)

        start_lat = detail.start_lat or trip.start_lat
        start_lon = detail.start_lon or trip.start_lon
        end_lat = detail.end_lat or trip.end_lat
        end_lon = detail.end_lon or trip.end_lon

        if not detail.polyline and not all((start_lat, start_lon, end_lat, end_lon)):
            logger.warning(f"Trip {trip.id} details carry neither a route nor coordinates")
            await self._record_failure(trip.id, "INVALID_RESPONSE")
            return _Outcome(trip.id, False, FetchErrorKind.MALFORMED)

        updates: dict[str, Any] = {
            "start_station_name": detail.start_station_name or trip.start_station_name,
            "start_lat": start_lat,
            "start_lon": start_lon,
            "end_station_name": detail.end_station_name or trip.end_station_name,
            "end_lat": end_lat,
            "end_lon": end_lon,
            "details_fetched": True,
            "details_fetched_at": self.clock(),
            "details_fetch_error": None,
        }
        if detail.polyline:
            updates["polyline"] = detail.polyline
            updates["has_actual_coordinates"] = True
        elif detail.has_coordinates:
            updates["has_actual_coordinates"] = True
        if detail.distance_m:
            updates["distance"] = detail.distance_m

        async with self.store.transaction() as session:
            await self.store.update_trip(session, trip.id, **updates)
        return _Outcome(trip.id, True)

    async def _record_failure(self, trip_id: str, error_code: str) -> None:
        """Count the attempt and keep the trip eligible for a later run."""
        async with self.store.transaction() as session:
            current = await self.store.get_trip(session, trip_id)
            if current is None:
                return
            await self.store.update_trip(
                session, trip_id,
                details_fetch_error=error_code,
                details_fetch_attempts=(current.details_fetch_attempts or 0) + 1,
                details_fetched=False,
            )
