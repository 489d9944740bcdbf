"""Polyline decoder tests."""

import pytest

from walksafe.providers.polyline import decode_flexible_polyline, decode_polyline


class TestEncodedPolyline:
    def test_decodes_reference_line(self):
        points = decode_polyline("_p~iF~ps|U_ulLnnqC_mqNvxq`@")
        assert [(p.latitude, p.longitude) for p in points] == [
            pytest.approx((38.5, -120.2)),
            pytest.approx((40.7, -120.95)),
            pytest.approx((43.252, -126.453)),
        ]

    def test_empty(self):
        assert decode_polyline("") == []

    def test_truncated_raises(self):
        with pytest.raises(ValueError):
            decode_polyline("_p~iF~ps|U_")


class TestFlexiblePolyline:
    def test_decodes_reference_line(self):
        points = decode_flexible_polyline("BFoz5xJ67i1B1B7PzIhaxL7Y")
        assert [(p.latitude, p.longitude) for p in points] == [
            pytest.approx((50.10228, 8.69821)),
            pytest.approx((50.10201, 8.69567)),
            pytest.approx((50.10063, 8.69150)),
            pytest.approx((50.09878, 8.68752)),
        ]

    def test_rejects_unknown_version(self):
        with pytest.raises(ValueError, match="version"):
            decode_flexible_polyline("CFoz5xJ67i1B")

    def test_rejects_invalid_character(self):
        with pytest.raises(ValueError):
            decode_flexible_polyline("BF!!")
