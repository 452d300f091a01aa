"""Bikeshare (Citi Bike) API client and payload parsing."""

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from tripsync.core.clock import from_epoch_millis

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.34
METERS_PER_KM = 1000.0

_RATE_LIMIT_PATTERN = re.compile(r"rate[\s_-]*limit|too many requests?", re.IGNORECASE)


class FetchErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    HTTP = "http"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


class RemoteAPIError(Exception):
    """A failed API call, classified where the response is received."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.code = code

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is FetchErrorKind.RATE_LIMITED

    @property
    def error_code(self) -> str:
        """Code persisted on a trip whose detail fetch failed."""
        if self.kind is FetchErrorKind.RATE_LIMITED:
            return "RATE_LIMITED"
        if self.kind is FetchErrorKind.HTTP:
            return f"HTTP_{self.status}"
        if self.kind is FetchErrorKind.MALFORMED:
            return "INVALID_RESPONSE"
        return "UNKNOWN_ERROR"


@dataclass
class TripPage:
    trips: list[dict[str, Any]]
    has_more: bool
    next_cursor: Optional[str]


@dataclass
class TripDetail:
    """Fields recovered from the per-trip detail endpoint."""
    start_station_name: Optional[str] = None
    start_lat: Optional[float] = None
    start_lon: Optional[float] = None
    end_station_name: Optional[str] = None
    end_lat: Optional[float] = None
    end_lon: Optional[float] = None
    polyline: Optional[str] = None
    distance_m: Optional[float] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def has_coordinates(self) -> bool:
        return all((self.start_lat, self.start_lon, self.end_lat, self.end_lon))


def classify_error_response(response: httpx.Response) -> RemoteAPIError:
    """Turn a non-2xx response into a typed error."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = body.get("code")
    message = body.get("error") or response.reason_phrase or f"HTTP {response.status_code}"

    if (
        response.status_code == 429
        or code == "RATE_LIMITED"
        or (isinstance(message, str) and _RATE_LIMIT_PATTERN.search(message))
    ):
        return RemoteAPIError(FetchErrorKind.RATE_LIMITED, f"Rate limited: {message}", response.status_code, code)

    return RemoteAPIError(FetchErrorKind.HTTP, f"HTTP {response.status_code}: {message}", response.status_code, code)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch milliseconds or ISO-8601 string -> naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return from_epoch_millis(value)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    raise ValueError(f"Unsupported timestamp: {value!r}")


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def parse_trip(raw: dict[str, Any], user_id: str) -> dict[str, Any]:
    """Normalize one trip from the history feed into Trip column values."""
    trip_id = raw.get("id")
    start_time = parse_timestamp(raw.get("startTime"))
    end_time = parse_timestamp(raw.get("endTime"))
    if not trip_id or start_time is None or end_time is None:
        raise ValueError(f"Trip is missing id or times: {raw!r}")

    duration = raw.get("duration")
    if duration is None:
        duration = int((end_time - start_time).total_seconds())

    return {
        "id": str(trip_id),
        "user_id": user_id,
        "start_time": start_time,
        "end_time": end_time,
        "duration": int(duration),
        "start_station_id": raw.get("startStationId"),
        "start_station_name": raw.get("startStationName"),
        "start_lat": _to_float(raw.get("startLat")),
        "start_lon": _to_float(raw.get("startLon")),
        "end_station_id": raw.get("endStationId"),
        "end_station_name": raw.get("endStationName"),
        "end_lat": _to_float(raw.get("endLat")),
        "end_lon": _to_float(raw.get("endLon")),
        "bike_type": raw.get("bikeType") or "classic",
        "distance": _to_float(raw.get("distance")),
        "angel_points": raw.get("angelPoints"),
        "cost": raw.get("cost"),
    }


def extract_polyline(map_image_url: Optional[str]) -> Optional[str]:
    """Pull the encoded path out of a static map image URL."""
    if not map_image_url:
        return None
    try:
        query = parse_qs(urlparse(map_image_url).query)
    except ValueError as e:
        logger.warning(f"Unparseable map URL: {e}")
        return None
    values = query.get("polyline")
    return values[0] if values and values[0] else None


def distance_to_meters(distance: Any) -> Optional[float]:
    """Convert a {value, unit} distance to meters; miles unless stated otherwise."""
    if not isinstance(distance, dict) or not distance.get("value"):
        return None
    value = float(distance["value"])
    unit = str(distance.get("unit") or "miles").lower()
    if unit in ("m", "meter", "meters", "metres"):
        return round(value)
    if unit in ("km", "kilometer", "kilometers", "kilometres"):
        return round(value * METERS_PER_KM)
    return round(value * METERS_PER_MILE)


def parse_trip_detail(trip: dict[str, Any]) -> TripDetail:
    """Parse the `trip` object of a detail response."""
    detail = TripDetail(raw=trip)

    start = trip.get("start_address") or {}
    if start:
        detail.start_station_name = start.get("address") or None
        detail.start_lat = _to_float(start.get("lat")) or None
        detail.start_lon = _to_float(start.get("lng")) or None

    end = trip.get("end_address") or {}
    if end:
        detail.end_station_name = end.get("address") or None
        detail.end_lat = _to_float(end.get("lat")) or None
        detail.end_lon = _to_float(end.get("lng")) or None

    detail.polyline = extract_polyline(trip.get("map_image_url"))
    detail.distance_m = distance_to_meters(trip.get("distance"))
    return detail


class CitibikeClient:
    """Async client for the bikeshare account API."""

    def __init__(self, base_url: str, access_token: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip('/')
        self.access_token = access_token
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            headers = {"Accept": "application/json"}
            if self.access_token:
                headers["Authorization"] = f"Bearer {self.access_token}"
            self.client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Send a request and return the JSON body, raising RemoteAPIError on any failure."""
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise RemoteAPIError(FetchErrorKind.UNKNOWN, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            error = classify_error_response(response)
            logger.warning(f"{method} {path} returned {response.status_code} ({error.kind.value})")
            raise error

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"{method} {path}: failed to parse JSON, body: {response.text[:200]}")
            raise RemoteAPIError(FetchErrorKind.MALFORMED, "Response is not JSON", response.status_code) from e

        if not isinstance(body, dict) or not body.get("success"):
            raise RemoteAPIError(FetchErrorKind.MALFORMED, f"Unsuccessful response from {path}", response.status_code)
        return body

    async def get_profile(self) -> dict[str, Any]:
        body = await self._request("GET", "/profile")
        if not isinstance(body.get("user"), dict):
            raise RemoteAPIError(FetchErrorKind.MALFORMED, "Invalid profile response")
        return body

    async def get_rewards(self) -> dict[str, Any]:
        return await self._request("GET", "/bike-angel")

    async def get_subscriptions(self) -> dict[str, Any]:
        return await self._request("GET", "/subscriptions")

    async def get_trip_history(self, cursor: Optional[str], user_id: str) -> TripPage:
        """Fetch one page of trip history starting at cursor."""
        body = await self._request("POST", "/trips/history", json={"cursor": cursor})
        raw_trips = body.get("trips") or []
        if not isinstance(raw_trips, list):
            raise RemoteAPIError(FetchErrorKind.MALFORMED, "Invalid trip response")

        try:
            trips = [parse_trip(raw, user_id) for raw in raw_trips]
        except (TypeError, ValueError) as e:
            raise RemoteAPIError(FetchErrorKind.MALFORMED, f"Invalid trip in response: {e}") from e

        return TripPage(
            trips=trips,
            has_more=bool(body.get("hasMore")),
            next_cursor=body.get("nextCursor"),
        )

    async def get_trip_detail(self, trip_id: str) -> TripDetail:
        body = await self._request("GET", f"/trips/{trip_id}")
        trip = body.get("trip")
        if not isinstance(trip, dict):
            raise RemoteAPIError(FetchErrorKind.MALFORMED, f"Invalid detail response for trip {trip_id}")
        try:
            return parse_trip_detail(trip)
        except (TypeError, ValueError) as e:
            raise RemoteAPIError(FetchErrorKind.MALFORMED, f"Invalid detail for trip {trip_id}: {e}") from e
