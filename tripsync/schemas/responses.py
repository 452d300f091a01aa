"""Pydantic response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel


class SyncStateResponse(BaseModel):
    """Sync bookkeeping for one resource kind."""
    key: str
    status: str
    last_synced_at: datetime | None
    next_sync_after: datetime | None
    error: str | None = None
    cursor: str | None = None
    total_records: int | None = None

    class Config:
        from_attributes = True


class SyncStatusResponse(BaseModel):
    states: list[SyncStateResponse]
    needs_sync: dict[str, bool]


class JobStartedResponse(BaseModel):
    message: str
    job: str


class JobStatusResponse(BaseModel):
    is_running: bool
    job: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: dict | None = None
    result: dict | None = None
    error: str | None = None


class TripResponse(BaseModel):
    """Stored trip."""
    id: str
    start_time: datetime
    end_time: datetime
    duration: int | None
    start_station_id: str | None
    start_station_name: str | None
    start_lat: float | None
    start_lon: float | None
    end_station_id: str | None
    end_station_name: str | None
    end_lat: float | None
    end_lon: float | None
    bike_type: str
    distance: float | None
    has_actual_coordinates: bool
    details_fetched: bool
    details_fetch_error: str | None
    details_fetch_attempts: int

    class Config:
        from_attributes = True


class TripStatsResponse(BaseModel):
    total_trips: int
    trips_with_details: int
    trips_with_errors: int
    profile_synced: bool
    rewards_synced: bool
    subscription_synced: bool


class TripGeometryResponse(BaseModel):
    """Decoded trip path for playback."""
    trip_id: str
    coordinates: list[tuple[float, float]]
    timestamps: list[float]
    cumulative_distances: list[float]
    total_distance: float
    avg_speed: float


class PlaybackPositionResponse(BaseModel):
    trip_id: str
    timestamp: float
    position: tuple[float, float]
    progress: float
    distance: float
    speed_mps: float
