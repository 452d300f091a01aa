"""Sync API endpoints."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable
from datetime import datetime
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, field_validator

from tripsync.core.clock import utcnow
from tripsync.core.dependencies import get_store, get_sync_service
from tripsync.models.sync_state import ResourceKind
from tripsync.schemas.responses import (
    JobStartedResponse,
    JobStatusResponse,
    SyncStateResponse,
    SyncStatusResponse,
)
from tripsync.services.citibike import RemoteAPIError
from tripsync.services.store import LocalStore
from tripsync.services.sync import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

SINGLE_RECORD_KINDS = {ResourceKind.PROFILE.value, ResourceKind.REWARDS.value, ResourceKind.SUBSCRIPTIONS.value}


class TripDetailsRequest(BaseModel):
    rate_limit_ms: int = 500
    batch_size: int = 1
    max_trips: int | None = None

    @field_validator("rate_limit_ms")
    @classmethod
    def validate_rate_limit(cls, v):
        if v < 0 or v > 60_000:
            raise ValueError("rate_limit_ms must be between 0 and 60000")
        return v

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v):
        if v < 1 or v > 10:
            raise ValueError("batch_size must be between 1 and 10")
        return v

    @field_validator("max_trips")
    @classmethod
    def validate_max_trips(cls, v):
        if v is not None and v < 1:
            raise ValueError("max_trips must be positive")
        return v


@dataclass
class _JobState:
    is_running: bool = False
    job: str | None = None
    stop_event: asyncio.Event | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: dict | None = None
    result: dict | None = None
    error: str | None = None


_job_state = _JobState()


def _record_progress(progress: Any) -> None:
    if isinstance(progress, dict):
        _job_state.progress = dict(progress)


def _start_job(name: str) -> asyncio.Event:
    if _job_state.is_running:
        raise HTTPException(
            status_code=409,
            detail=f"A {_job_state.job} job is already running. Check /api/sync/jobs/status for progress.",
        )
    _job_state.is_running = True
    _job_state.job = name
    _job_state.stop_event = asyncio.Event()
    _job_state.started_at = utcnow()
    _job_state.finished_at = None
    _job_state.progress = None
    _job_state.result = None
    _job_state.error = None
    return _job_state.stop_event


async def _run_job(name: str, work: Callable[[], Awaitable[dict]]) -> None:
    """Background task wrapper recording the outcome of a sync job."""
    try:
        _job_state.result = await work()
        logger.info(f"{name} job finished: {_job_state.result}")
    except Exception as e:
        logger.error(f"{name} job failed: {e}")
        _job_state.error = str(e)
    finally:
        _job_state.is_running = False
        _job_state.finished_at = utcnow()


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    store: LocalStore = Depends(get_store),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Get sync state for every resource kind."""
    async with store.transaction() as session:
        states = await store.list_sync_states(session, sync_service.user_id)

    return SyncStatusResponse(
        states=[SyncStateResponse.model_validate(state) for state in states],
        needs_sync=await sync_service.needs_sync(),
    )


@router.post("/trips", response_model=JobStartedResponse)
async def sync_trips(
    background_tasks: BackgroundTasks,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Start incremental trip history sync in the background."""
    stop_event = _start_job("trips")

    async def work() -> dict:
        result = await sync_service.sync_trips(_record_progress, stop_event=stop_event)
        return asdict(result)

    background_tasks.add_task(_run_job, "trips", work)
    return JobStartedResponse(message="Trip sync started", job="trips")


@router.post("/trip-details", response_model=JobStartedResponse)
async def sync_trip_details(
    background_tasks: BackgroundTasks,
    options: TripDetailsRequest | None = None,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Start the trip details backfill in the background."""
    options = options or TripDetailsRequest()
    stop_event = _start_job("trip_details")

    async def work() -> dict:
        result = await sync_service.sync_trip_details(
            _record_progress,
            rate_limit_ms=options.rate_limit_ms,
            batch_size=options.batch_size,
            max_trips=options.max_trips,
            stop_event=stop_event,
        )
        return asdict(result)

    background_tasks.add_task(_run_job, "trip_details", work)
    return JobStartedResponse(message="Trip details backfill started", job="trip_details")


@router.post("/all", response_model=JobStartedResponse)
async def sync_all(
    background_tasks: BackgroundTasks,
    fetch_trip_details: bool = False,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Start a full sync (profile, rewards, subscriptions, trips)."""
    stop_event = _start_job("all")

    async def work() -> dict:
        return await sync_service.sync_all(
            lambda kind, progress: _record_progress({"kind": kind, **progress}),
            fetch_trip_details=fetch_trip_details,
            stop_event=stop_event,
        )

    background_tasks.add_task(_run_job, "all", work)
    return JobStartedResponse(message="Full sync started", job="all")


@router.get("/jobs/status", response_model=JobStatusResponse)
async def job_status():
    """Get the progress of the current or last background job."""
    return JobStatusResponse(
        is_running=_job_state.is_running,
        job=_job_state.job,
        started_at=_job_state.started_at,
        finished_at=_job_state.finished_at,
        progress=_job_state.progress,
        result=_job_state.result,
        error=_job_state.error,
    )


@router.post("/jobs/cancel")
async def cancel_job():
    """Ask the running job to stop at its next page or batch boundary."""
    if not _job_state.is_running or _job_state.stop_event is None:
        raise HTTPException(status_code=400, detail="No sync job is currently running")

    _job_state.stop_event.set()
    return {"message": f"Cancellation of {_job_state.job} job requested"}


@router.post("/{kind}", response_model=SyncStateResponse)
async def sync_resource(
    kind: str,
    force: bool = False,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Sync profile, rewards or subscriptions (no-op while fresh unless forced)."""
    if kind not in SINGLE_RECORD_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown resource kind '{kind}'")

    try:
        state = await sync_service.sync(kind, force=force)
    except RemoteAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return SyncStateResponse.model_validate(state)
