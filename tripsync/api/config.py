from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tripsync.core.config import get_settings
from tripsync.core.dependencies import get_decoder
from tripsync.services.geometry import TripDecoder

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    api_base_url: str
    user_id: str
    profile_ttl_seconds: int
    rewards_ttl_seconds: int
    subscriptions_ttl_seconds: int
    trip_sync_max_pages: int
    details_rate_limit_ms: int
    details_batch_size: int
    geometry_cache_mb: float
    sync_interval_minutes: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        db_path=settings.db_path,
        api_base_url=settings.api_base_url,
        user_id=settings.user_id,
        profile_ttl_seconds=settings.profile_ttl_seconds,
        rewards_ttl_seconds=settings.rewards_ttl_seconds,
        subscriptions_ttl_seconds=settings.subscriptions_ttl_seconds,
        trip_sync_max_pages=settings.trip_sync_max_pages,
        details_rate_limit_ms=settings.details_rate_limit_ms,
        details_batch_size=settings.details_batch_size,
        geometry_cache_mb=settings.geometry_cache_mb,
        sync_interval_minutes=settings.sync_interval_minutes,
        debug=settings.debug,
    )


@router.get("/cache/stats")
async def cache_stats(decoder: TripDecoder = Depends(get_decoder)) -> dict:
    """Decoded geometry cache statistics."""
    return decoder.cache.stats()


@router.delete("/cache")
async def clear_cache(decoder: TripDecoder = Depends(get_decoder)) -> dict:
    """Drop every decoded trip from the geometry cache."""
    decoder.cache.clear()
    return {"message": "Geometry cache cleared"}
