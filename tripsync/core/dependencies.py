"""FastAPI dependencies for the long-lived objects built in the app lifespan."""

from fastapi import Request

from tripsync.services.geometry import TripDecoder
from tripsync.services.store import LocalStore
from tripsync.services.sync import SyncService


def get_store(request: Request) -> LocalStore:
    return request.app.state.store


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_decoder(request: Request) -> TripDecoder:
    return request.app.state.decoder
