"""Trip geometry - decoded paths, a byte-budgeted LRU cache and playback positions.

Timestamps along a decoded path are spread evenly between the trip's start
and end time. That is a constant-speed approximation, not a GPS timeline.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Iterable, Optional, Union

from tripsync.core.clock import to_epoch_seconds
from tripsync.models.database import Trip
from tripsync.services.polyline import decode_polyline

logger = logging.getLogger(__name__)

# Earth's mean radius in meters
EARTH_RADIUS_M = 6_371_000

# Approximate in-memory footprint of a decoded trip
BYTES_PER_COORDINATE = 16
BYTES_PER_TIMESTAMP = 8
BYTES_PER_DISTANCE = 8
ENTRY_OVERHEAD_BYTES = 100


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points using Haversine formula.

    Args:
        lat1, lon1: First point coordinates in degrees
        lat2, lon2: Second point coordinates in degrees

    Returns:
        Distance in meters
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


@dataclass(frozen=True)
class DecodedTrip:
    """Decoded path of a trip, ready for playback."""
    trip_id: str
    coordinates: list[tuple[float, float]]  # (lng, lat)
    timestamps: list[float]  # epoch seconds, one per coordinate
    cumulative_distances: list[float]  # meters from start
    total_distance: float
    avg_speed: float  # m/s
    polyline: str

    @property
    def size_bytes(self) -> int:
        return (
            len(self.coordinates) * BYTES_PER_COORDINATE
            + len(self.timestamps) * BYTES_PER_TIMESTAMP
            + len(self.cumulative_distances) * BYTES_PER_DISTANCE
            + ENTRY_OVERHEAD_BYTES
        )


@dataclass(frozen=True)
class PlaybackPosition:
    position: tuple[float, float]  # (lng, lat)
    progress: float  # 0-1
    distance: float  # meters from start
    speed_mps: float


class GeometryCache:
    """LRU cache of decoded trips bounded by approximate byte size.

    Recency is access order: a hit moves the entry to the most recent end.
    """

    def __init__(self, max_bytes: int = 10 * 1024 * 1024):
        self.max_bytes = max_bytes
        self.cache: OrderedDict[str, DecodedTrip] = OrderedDict()
        self.current_bytes = 0
        self.lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self.cache)

    def __contains__(self, trip_id: str) -> bool:
        return trip_id in self.cache

    def get(self, trip_id: str) -> Optional[DecodedTrip]:
        """Get cached entry and mark it most recently used."""
        with self.lock:
            entry = self.cache.get(trip_id)
            if entry is None:
                self.misses += 1
                return None
            self.cache.move_to_end(trip_id)
            self.hits += 1
            return entry

    def put(self, decoded: DecodedTrip) -> None:
        """Store an entry, evicting least recently used ones until it fits."""
        size = decoded.size_bytes
        with self.lock:
            old = self.cache.pop(decoded.trip_id, None)
            if old is not None:
                self.current_bytes -= old.size_bytes

            while self.cache and self.current_bytes + size > self.max_bytes:
                evicted_id, evicted = self.cache.popitem(last=False)
                self.current_bytes -= evicted.size_bytes
                self.evictions += 1
                logger.debug(f"Evicted decoded trip {evicted_id} ({evicted.size_bytes} bytes)")

            self.cache[decoded.trip_id] = decoded
            self.current_bytes += size

    def remove(self, trip_id: str) -> None:
        with self.lock:
            old = self.cache.pop(trip_id, None)
            if old is not None:
                self.current_bytes -= old.size_bytes

    def clear(self) -> None:
        with self.lock:
            self.cache.clear()
            self.current_bytes = 0

    def stats(self) -> dict:
        """Return cache statistics."""
        with self.lock:
            total = self.hits + self.misses
            hit_rate = (self.hits / total * 100) if total > 0 else 0
            return {
                "entries": len(self.cache),
                "size_bytes": self.current_bytes,
                "max_bytes": self.max_bytes,
                "size_mb": round(self.current_bytes / 1024 / 1024, 2),
                "max_mb": round(self.max_bytes / 1024 / 1024, 2),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": f"{hit_rate:.1f}%",
            }


def cumulative_distances(coordinates: list[tuple[float, float]]) -> list[float]:
    """Running sum of segment distances along (lng, lat) coordinates."""
    if not coordinates:
        return []
    distances = [0.0]
    total = 0.0
    for (lng1, lat1), (lng2, lat2) in zip(coordinates, coordinates[1:]):
        total += haversine_distance(lat1, lng1, lat2, lng2)
        distances.append(total)
    return distances


def interpolate_timestamps(start: float, end: float, num_points: int) -> list[float]:
    """Spread num_points timestamps evenly over [start, end]."""
    if num_points <= 0:
        return []
    if num_points == 1:
        return [start]
    interval = (end - start) / (num_points - 1)
    return [round(start + interval * i, 3) for i in range(num_points)]


class TripDecoder:
    """Decodes trips through a shared GeometryCache."""

    def __init__(self, cache: GeometryCache):
        self.cache = cache

    def decode(self, trip: Trip) -> Optional[DecodedTrip]:
        """Decoded path for a trip, or None if it has no usable polyline."""
        cached = self.cache.get(trip.id)
        if cached is not None and cached.polyline == trip.polyline:
            return cached

        if not trip.polyline:
            if cached is not None:
                self.cache.remove(trip.id)
            return None

        coordinates = decode_polyline(trip.polyline)
        if not coordinates:
            return None

        start = to_epoch_seconds(trip.start_time)
        end = to_epoch_seconds(trip.end_time)

        distances = cumulative_distances(coordinates)
        total_distance = distances[-1]
        duration = end - start

        decoded = DecodedTrip(
            trip_id=trip.id,
            coordinates=coordinates,
            timestamps=interpolate_timestamps(start, end, len(coordinates)),
            cumulative_distances=distances,
            total_distance=total_distance,
            avg_speed=total_distance / duration if duration > 0 else 0.0,
            polyline=trip.polyline,
        )
        self.cache.put(decoded)
        return decoded

    def decode_many(self, trips: Iterable[Trip]) -> list[DecodedTrip]:
        """Decode several trips, skipping those without a path."""
        decoded = (self.decode(trip) for trip in trips)
        return [d for d in decoded if d is not None]

    @staticmethod
    def position_at(
        decoded: DecodedTrip, timestamp: Union[float, datetime]
    ) -> Optional[PlaybackPosition]:
        """Interpolated position of the rider at a point in time."""
        timestamps = decoded.timestamps
        coordinates = decoded.coordinates
        distances = decoded.cumulative_distances
        if not timestamps or not coordinates:
            return None

        if isinstance(timestamp, datetime):
            timestamp = to_epoch_seconds(timestamp)

        t = max(timestamps[0], min(timestamps[-1], timestamp))

        # Last sample at or before t
        idx = bisect_right(timestamps, t) - 1

        if idx >= len(coordinates) - 1:
            return PlaybackPosition(
                position=coordinates[-1],
                progress=1.0,
                distance=decoded.total_distance,
                speed_mps=0.0,
            )

        t1 = timestamps[idx]
        t2 = timestamps[idx + 1]
        ratio = (t - t1) / (t2 - t1) if t2 > t1 else 0.0

        lng1, lat1 = coordinates[idx]
        lng2, lat2 = coordinates[idx + 1]
        position = (lng1 + (lng2 - lng1) * ratio, lat1 + (lat2 - lat1) * ratio)

        segment = distances[idx + 1] - distances[idx]
        distance = distances[idx] + segment * ratio
        progress = distance / decoded.total_distance if decoded.total_distance > 0 else 0.0
        speed = segment / (t2 - t1) if t2 > t1 else 0.0

        return PlaybackPosition(
            position=position,
            progress=progress,
            distance=distance,
            speed_mps=speed,
        )
