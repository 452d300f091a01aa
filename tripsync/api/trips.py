"""Trip query and playback endpoints."""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query

from tripsync.core.dependencies import get_decoder, get_store, get_sync_service
from tripsync.schemas.responses import (
    PlaybackPositionResponse,
    TripGeometryResponse,
    TripResponse,
    TripStatsResponse,
)
from tripsync.services.geometry import DecodedTrip, TripDecoder
from tripsync.services.store import LocalStore
from tripsync.services.sync import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trips", tags=["trips"])


@router.get("", response_model=list[TripResponse])
async def list_trips(
    start: datetime | None = None,
    end: datetime | None = None,
    store: LocalStore = Depends(get_store),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Trips whose start time falls in [start, end]."""
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=422, detail="start must be before or equal to end")

    async with store.transaction() as session:
        trips = await store.trips_in_range(session, sync_service.user_id, start, end)
    return [TripResponse.model_validate(trip) for trip in trips]


@router.get("/stats", response_model=TripStatsResponse)
async def trip_stats(
    store: LocalStore = Depends(get_store),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Local record counts."""
    async with store.transaction() as session:
        stats = await store.stats(session, sync_service.user_id)
    return TripStatsResponse(**stats)


async def _decode_or_404(trip_id: str, store: LocalStore, decoder: TripDecoder) -> DecodedTrip:
    async with store.transaction() as session:
        trip = await store.get_trip(session, trip_id)
    if trip is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")

    decoded = decoder.decode(trip)
    if decoded is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} has no route geometry")
    return decoded


@router.get("/{trip_id}/geometry", response_model=TripGeometryResponse)
async def trip_geometry(
    trip_id: str,
    store: LocalStore = Depends(get_store),
    decoder: TripDecoder = Depends(get_decoder),
):
    """Decoded route with interpolated timestamps."""
    decoded = await _decode_or_404(trip_id, store, decoder)
    return TripGeometryResponse(
        trip_id=decoded.trip_id,
        coordinates=decoded.coordinates,
        timestamps=decoded.timestamps,
        cumulative_distances=decoded.cumulative_distances,
        total_distance=decoded.total_distance,
        avg_speed=decoded.avg_speed,
    )


@router.get("/{trip_id}/position", response_model=PlaybackPositionResponse)
async def trip_position(
    trip_id: str,
    t: float = Query(..., description="Epoch seconds"),
    store: LocalStore = Depends(get_store),
    decoder: TripDecoder = Depends(get_decoder),
):
    """Where the rider was at time t (clamped to the trip)."""
    decoded = await _decode_or_404(trip_id, store, decoder)
    position = decoder.position_at(decoded, t)
    if position is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} has no route geometry")

    return PlaybackPositionResponse(
        trip_id=trip_id,
        timestamp=t,
        position=position.position,
        progress=position.progress,
        distance=position.distance,
        speed_mps=position.speed_mps,
    )
