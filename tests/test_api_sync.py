"""Tests for sync API endpoints.

Routers are mounted on a bare FastAPI app with the lifespan-built objects
replaced through dependency overrides. Requests go through httpx's ASGI
transport, which also runs background tasks before returning.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from conftest import USER_ID, make_trip_row
from tripsync.api import sync as sync_api
from tripsync.core.dependencies import get_store, get_sync_service
from tripsync.services.citibike import FetchErrorKind, RemoteAPIError, TripPage
from tripsync.services.sync import SyncService


def _make_test_app(store, sync_service):
    """Build a minimal FastAPI app with the sync router."""
    app = FastAPI()
    app.include_router(sync_api.router)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    return app


def _mock_client() -> MagicMock:
    client = MagicMock()
    client.get_profile = AsyncMock(return_value={"success": True, "user": {"id": USER_ID, "email": "r@example.com"}})
    client.get_rewards = AsyncMock(return_value={"success": True, "profile": {"totalPoints": 5}})
    client.get_subscriptions = AsyncMock(return_value={"success": True, "subscriptions": {}})
    client.get_trip_history = AsyncMock(return_value=TripPage(
        trips=[make_trip_row("a"), make_trip_row("b", minutes=30)], has_more=False, next_cursor=None,
    ))
    client.get_trip_detail = AsyncMock()
    return client


@pytest.fixture(autouse=True)
def reset_job_state(monkeypatch):
    monkeypatch.setattr(sync_api, "_job_state", sync_api._JobState())


@pytest.fixture
def client_mock():
    return _mock_client()


@pytest_asyncio.fixture
async def http(store, client_mock, clock):
    service = SyncService(client_mock, store, USER_ID, clock=clock)
    app = _make_test_app(store, service)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http


class TestSyncStatus:

    @pytest.mark.asyncio
    async def test_empty_status(self, http):
        resp = await http.get("/api/sync/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["states"] == []
        assert data["needs_sync"] == {"profile": True, "rewards": True, "subscriptions": True}

    @pytest.mark.asyncio
    async def test_status_after_profile_sync(self, http):
        await http.post("/api/sync/profile")

        data = (await http.get("/api/sync/status")).json()
        assert [s["key"] for s in data["states"]] == ["profile"]
        assert data["states"][0]["status"] == "idle"
        assert data["needs_sync"]["profile"] is False


class TestResourceEndpoint:

    @pytest.mark.asyncio
    async def test_sync_profile_returns_state(self, http, client_mock):
        resp = await http.post("/api/sync/profile")
        assert resp.status_code == 200
        data = resp.json()
        assert data["key"] == "profile"
        assert data["status"] == "idle"
        assert data["next_sync_after"] is not None

        await http.post("/api/sync/profile")
        assert client_mock.get_profile.await_count == 1

    @pytest.mark.asyncio
    async def test_force_refetches(self, http, client_mock):
        await http.post("/api/sync/rewards")
        await http.post("/api/sync/rewards", params={"force": "true"})
        assert client_mock.get_rewards.await_count == 2

    @pytest.mark.asyncio
    async def test_remote_failure_is_502(self, http, client_mock):
        client_mock.get_subscriptions.side_effect = RemoteAPIError(FetchErrorKind.HTTP, "HTTP 500: down", 500)

        resp = await http.post("/api/sync/subscriptions")
        assert resp.status_code == 502
        assert "HTTP 500" in resp.json()["detail"]

        data = (await http.get("/api/sync/status")).json()
        assert data["states"][0]["status"] == "error"

    @pytest.mark.asyncio
    async def test_list_shaped_subscriptions_body_is_stored_with_defaults(self, http, client_mock):
        client_mock.get_subscriptions.return_value = {"success": True, "subscriptions": [{"plan_name": "Annual"}]}

        resp = await http.post("/api/sync/subscriptions", params={"force": "true"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "idle"

    @pytest.mark.asyncio
    async def test_unknown_kind_is_404(self, http):
        resp = await http.post("/api/sync/bikes")
        assert resp.status_code == 404


class TestBackgroundJobs:

    @pytest.mark.asyncio
    async def test_trip_sync_job_records_result(self, http):
        resp = await http.post("/api/sync/trips")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Trip sync started", "job": "trips"}

        status = (await http.get("/api/sync/jobs/status")).json()
        assert status["is_running"] is False
        assert status["job"] == "trips"
        assert status["result"] == {"total_synced": 2, "has_more": False, "pages": 1}
        assert status["progress"] == {"page": 1, "total_synced": 2}
        assert status["error"] is None

    @pytest.mark.asyncio
    async def test_failed_job_records_error(self, http, client_mock):
        client_mock.get_trip_history.side_effect = RemoteAPIError(FetchErrorKind.RATE_LIMITED, "Rate limited", 429)

        await http.post("/api/sync/trips")

        status = (await http.get("/api/sync/jobs/status")).json()
        assert status["is_running"] is False
        assert status["error"] == "Rate limited"

    @pytest.mark.asyncio
    async def test_second_job_while_running_is_409(self, http):
        sync_api._job_state.is_running = True
        sync_api._job_state.job = "trips"

        resp = await http.post("/api/sync/trip-details")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_trip_details_validates_options(self, http):
        resp = await http.post("/api/sync/trip-details", json={"batch_size": 20})
        assert resp.status_code == 422

        resp = await http.post("/api/sync/trip-details", json={"rate_limit_ms": -1})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_trip_details_job_without_pending_trips(self, http):
        resp = await http.post("/api/sync/trip-details", json={"batch_size": 2})
        assert resp.status_code == 200

        status = (await http.get("/api/sync/jobs/status")).json()
        assert status["result"]["fetched"] == 0
        assert status["result"]["skipped"] == 0

    @pytest.mark.asyncio
    async def test_full_sync_job(self, http):
        resp = await http.post("/api/sync/all")
        assert resp.status_code == 200

        status = (await http.get("/api/sync/jobs/status")).json()
        assert status["result"]["profile"] == "idle"
        assert status["result"]["trips"]["total_synced"] == 2
        assert status["progress"]["kind"] == "trips"

    @pytest.mark.asyncio
    async def test_cancel_without_job_is_400(self, http):
        resp = await http.post("/api/sync/jobs/cancel")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_cancel_sets_stop_event(self, http):
        stop_event = asyncio.Event()
        sync_api._job_state.is_running = True
        sync_api._job_state.job = "trip_details"
        sync_api._job_state.stop_event = stop_event

        resp = await http.post("/api/sync/jobs/cancel")
        assert resp.status_code == 200
        assert stop_event.is_set()
