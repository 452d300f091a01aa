"""Tests for the bikeshare API client and payload parsers.

HTTP is served by httpx.MockTransport so error classification runs against
real responses.
"""

from datetime import datetime

import httpx
import pytest

from tripsync.services.citibike import (
    CitibikeClient,
    FetchErrorKind,
    RemoteAPIError,
    distance_to_meters,
    extract_polyline,
    parse_timestamp,
    parse_trip,
    parse_trip_detail,
)

BASE_URL = "http://test/api/citibike"


def _client(handler) -> CitibikeClient:
    client = CitibikeClient(BASE_URL, access_token="token")
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


def _raw_trip(**overrides) -> dict:
    raw = {
        "id": "trip-1",
        "startTime": 1746086400000,
        "endTime": 1746087600000,
        "startStationId": "s1",
        "startStationName": "W 21 St & 6 Ave",
        "startLat": 40.7417,
        "startLon": -73.9942,
        "endStationId": "s2",
        "endStationName": "Broadway & E 14 St",
        "endLat": 40.7345,
        "endLon": -73.9907,
        "bikeType": "ebike",
        "distance": 1500,
    }
    raw.update(overrides)
    return raw


class TestErrorClassification:

    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self):
        client = _client(lambda request: httpx.Response(429, json={"error": "slow down"}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_trip_detail("t1")
        assert exc_info.value.kind is FetchErrorKind.RATE_LIMITED
        assert exc_info.value.error_code == "RATE_LIMITED"
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limit_message_on_other_status_is_rate_limited(self):
        client = _client(lambda request: httpx.Response(403, json={"error": "Rate limit exceeded"}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_profile()
        assert exc_info.value.is_rate_limited
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limited_code_is_rate_limited(self):
        client = _client(lambda request: httpx.Response(503, json={"code": "RATE_LIMITED"}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_rewards()
        assert exc_info.value.is_rate_limited
        await client.close()

    @pytest.mark.asyncio
    async def test_other_status_is_http_error_with_status_code(self):
        client = _client(lambda request: httpx.Response(404, json={"error": "Trip not found"}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_trip_detail("t1")
        assert exc_info.value.kind is FetchErrorKind.HTTP
        assert exc_info.value.status == 404
        assert exc_info.value.error_code == "HTTP_404"
        await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_subscriptions()
        assert exc_info.value.kind is FetchErrorKind.MALFORMED
        assert exc_info.value.error_code == "INVALID_RESPONSE"
        await client.close()

    @pytest.mark.asyncio
    async def test_unsuccessful_body_is_malformed(self):
        client = _client(lambda request: httpx.Response(200, json={"success": False}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_rewards()
        assert exc_info.value.kind is FetchErrorKind.MALFORMED
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_unknown(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_profile()
        assert exc_info.value.kind is FetchErrorKind.UNKNOWN
        assert exc_info.value.error_code == "UNKNOWN_ERROR"
        await client.close()


class TestEndpoints:

    @pytest.mark.asyncio
    async def test_trip_history_posts_cursor_and_parses_page(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={
                "success": True,
                "trips": [_raw_trip()],
                "hasMore": True,
                "nextCursor": "c2",
            })

        client = _client(handler)
        page = await client.get_trip_history("c1", "user-1")

        assert seen["method"] == "POST"
        assert seen["path"] == "/api/citibike/trips/history"
        assert b'"cursor"' in seen["body"] and b'"c1"' in seen["body"]
        assert page.has_more is True
        assert page.next_cursor == "c2"
        assert page.trips[0]["id"] == "trip-1"
        assert page.trips[0]["user_id"] == "user-1"
        await client.close()

    @pytest.mark.asyncio
    async def test_trip_history_with_invalid_trip_is_malformed(self):
        client = _client(lambda request: httpx.Response(200, json={
            "success": True,
            "trips": [{"id": "no-times"}],
            "hasMore": False,
        }))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_trip_history(None, "user-1")
        assert exc_info.value.kind is FetchErrorKind.MALFORMED
        await client.close()

    @pytest.mark.asyncio
    async def test_trip_detail_extracts_polyline_and_coordinates(self):
        client = _client(lambda request: httpx.Response(200, json={
            "success": True,
            "trip": {
                "start_address": {"address": "W 21 St & 6 Ave", "lat": 40.7417, "lng": -73.9942},
                "end_address": {"address": "Broadway & E 14 St", "lat": 40.7345, "lng": -73.9907},
                "map_image_url": "https://maps.example.com/static?size=600x400&polyline=abc%40def",
                "distance": {"value": 1.2, "unit": "miles"},
            },
        }))
        detail = await client.get_trip_detail("t1")

        assert detail.polyline == "abc@def"
        assert detail.has_coordinates
        assert detail.start_station_name == "W 21 St & 6 Ave"
        assert detail.distance_m == 1931
        await client.close()

    @pytest.mark.asyncio
    async def test_profile_without_user_is_malformed(self):
        client = _client(lambda request: httpx.Response(200, json={"success": True}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.get_profile()
        assert exc_info.value.kind is FetchErrorKind.MALFORMED
        await client.close()


class TestParsers:

    def test_parse_timestamp_epoch_millis(self):
        assert parse_timestamp(1746086400000) == datetime(2025, 5, 1, 8, 0, 0)

    def test_parse_timestamp_iso_with_offset_is_naive_utc(self):
        assert parse_timestamp("2025-05-01T04:00:00-04:00") == datetime(2025, 5, 1, 8, 0, 0)
        assert parse_timestamp("2025-05-01T08:00:00Z") == datetime(2025, 5, 1, 8, 0, 0)

    def test_parse_timestamp_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_parse_trip_maps_fields_and_derives_duration(self):
        row = parse_trip(_raw_trip(), "user-1")
        assert row["start_time"] == datetime(2025, 5, 1, 8, 0, 0)
        assert row["duration"] == 1200
        assert row["bike_type"] == "ebike"
        assert row["start_lat"] == 40.7417
        assert row["distance"] == 1500.0

    def test_parse_trip_missing_times_raises(self):
        with pytest.raises(ValueError):
            parse_trip({"id": "x"}, "user-1")

    def test_extract_polyline(self):
        assert extract_polyline("https://m.example.com/map?polyline=_p~iF~ps%7CU") == "_p~iF~ps|U"
        assert extract_polyline("https://m.example.com/map?size=1x1") is None
        assert extract_polyline(None) is None

    def test_distance_to_meters_units(self):
        assert distance_to_meters({"value": 1, "unit": "miles"}) == 1609
        assert distance_to_meters({"value": 1.5}) == 2414
        assert distance_to_meters({"value": 2, "unit": "km"}) == 2000
        assert distance_to_meters({"value": 350, "unit": "m"}) == 350
        assert distance_to_meters(None) is None
        assert distance_to_meters({"value": 0}) is None

    def test_parse_trip_detail_without_addresses(self):
        detail = parse_trip_detail({"map_image_url": None})
        assert detail.polyline is None
        assert not detail.has_coordinates
