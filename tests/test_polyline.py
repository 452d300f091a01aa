"""Tests for encoded polyline decoding."""

import pytest

from tripsync.services.polyline import decode_polyline

GOOGLE_EXAMPLE = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"


class TestDecodePolyline:

    def test_decodes_reference_polyline_in_lng_lat_order(self):
        coords = decode_polyline(GOOGLE_EXAMPLE)
        assert coords == [
            pytest.approx((-120.2, 38.5)),
            pytest.approx((-120.95, 40.7)),
            pytest.approx((-126.453, 43.252)),
        ]

    def test_empty_string_returns_empty_list(self):
        assert decode_polyline("") == []

    def test_none_returns_empty_list(self):
        assert decode_polyline(None) == []

    def test_truncated_input_returns_empty_list(self):
        assert decode_polyline("_p~iF~ps|U_ulL") == []

    def test_lat_without_lng_returns_empty_list(self):
        assert decode_polyline("_p~iF") == []

    def test_value_cut_mid_chunk_returns_empty_list(self):
        assert decode_polyline("_p~iF~ps|U_") == []

    def test_high_precision_scales_by_1e6(self):
        coords = decode_polyline(GOOGLE_EXAMPLE, precision=6)
        assert coords[0] == pytest.approx((-12.02, 3.85))
