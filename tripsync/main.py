import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from tripsync.core.config import get_settings
from tripsync.core.database import async_session_maker, init_db
from tripsync.api import config, sync, trips
from tripsync.services.citibike import CitibikeClient
from tripsync.services.geometry import GeometryCache, TripDecoder
from tripsync.services.scheduler import start_scheduler, stop_scheduler
from tripsync.services.store import LocalStore
from tripsync.services.sync import create_sync_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - owns the store, API client, geometry cache and scheduler."""
    settings = get_settings()

    # Startup
    await init_db()
    store = LocalStore(async_session_maker)
    client = CitibikeClient(
        settings.api_base_url,
        settings.api_access_token,
        timeout=settings.api_timeout_seconds,
    )
    app.state.store = store
    app.state.sync_service = create_sync_service(settings, client, store)
    app.state.decoder = TripDecoder(GeometryCache(int(settings.geometry_cache_mb * 1024 * 1024)))

    if settings.scheduler_enabled:
        start_scheduler(app.state.sync_service)
    yield
    # Shutdown
    stop_scheduler()
    await client.close()


# Create FastAPI application
app = FastAPI(
    title="Trip Sync",
    description="Local-first sync of bikeshare trips, profile and rewards",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(sync.router)
app.include_router(trips.router)
