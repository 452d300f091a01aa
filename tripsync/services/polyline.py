"""Encoded polyline decoding (Google polyline algorithm)."""

import logging

import polyline

logger = logging.getLogger(__name__)


def decode_polyline(encoded: str, precision: int = 5) -> list[tuple[float, float]]:
    """
    Decode an encoded polyline into (longitude, latitude) pairs.

    Args:
        encoded: Encoded polyline string
        precision: 5 for standard polylines, 6 for high-precision ones

    Returns:
        Coordinates in GeoJSON order, or an empty list when the input is
        empty or truncated.
    """
    if not encoded:
        return []

    try:
        return [tuple(point) for point in polyline.decode(encoded, precision, geojson=True)]
    except (IndexError, ValueError) as e:
        logger.warning(f"Malformed polyline ({len(encoded)} chars), discarding: {e}")
        return []
