"""
Test suite for geodesic helpers
File: tests/test_geo.py
"""

import math

import pytest

from tripcorrelation.exceptions import InsufficientDataError
from tripcorrelation.intelligence.geo import (
    bounding_box, centroid, distance_km, distance_m, haversine_m, in_box, is_valid_coordinate, spread_m
)

from conftest import PERTH_TERMINAL, offset


class TestDistance:
    """Distances on the WGS-84 ellipsoid."""

    def test_zero_distance(self):
        assert distance_m(*PERTH_TERMINAL, *PERTH_TERMINAL) == 0

    def test_one_degree_of_latitude(self):
        """A degree of latitude near Perth is roughly 110.9 km."""
        d = distance_km(-32.0, 116.0, -31.0, 116.0)
        assert 110.5 < d < 111.3

    def test_symmetric(self):
        other = (-32.2, 115.7)
        assert distance_m(*PERTH_TERMINAL, *other) == pytest.approx(distance_m(*other, *PERTH_TERMINAL))

    def test_haversine_close_to_geodesic(self):
        other = offset(PERTH_TERMINAL, 400, 300)
        assert haversine_m(*PERTH_TERMINAL, *other) == pytest.approx(distance_m(*PERTH_TERMINAL, *other), rel=0.01)


class TestCoordinates:

    def test_valid(self):
        assert is_valid_coordinate(-31.98, 115.97)
        assert is_valid_coordinate(90, 180)
        assert is_valid_coordinate("-31.98", "115.97")

    def test_invalid(self):
        assert not is_valid_coordinate(None, 115.97)
        assert not is_valid_coordinate(-31.98, None)
        assert not is_valid_coordinate(91, 0)
        assert not is_valid_coordinate(0, -180.5)
        assert not is_valid_coordinate(float('nan'), 0)
        assert not is_valid_coordinate("north", 0)


class TestCentroidAndSpread:

    def test_centroid_is_mean(self):
        assert centroid([(0.0, 0.0), (2.0, 4.0)]) == (1.0, 2.0)

    def test_centroid_of_nothing_raises(self):
        with pytest.raises(InsufficientDataError):
            centroid([])

    def test_spread_of_identical_points(self):
        assert spread_m([PERTH_TERMINAL] * 3, PERTH_TERMINAL) == 0

    def test_spread_is_root_mean_square(self):
        points = [offset(PERTH_TERMINAL, 100, 0), offset(PERTH_TERMINAL, -100, 0)]
        assert spread_m(points, PERTH_TERMINAL) == pytest.approx(100, rel=0.01)

    def test_spread_of_nothing_raises(self):
        with pytest.raises(InsufficientDataError):
            spread_m([], PERTH_TERMINAL)


class TestBoundingBox:

    @pytest.mark.parametrize("north,east", [(2000, 0), (-2000, 0), (0, 2000), (0, -2000), (1414, 1414)])
    def test_box_contains_points_at_radius(self, north, east):
        box = bounding_box(*PERTH_TERMINAL, 2000)
        lat, lng = offset(PERTH_TERMINAL, north * 0.999, east * 0.999)
        assert in_box(lat, lng, box)

    def test_box_excludes_far_points(self):
        box = bounding_box(*PERTH_TERMINAL, 2000)
        assert not in_box(*offset(PERTH_TERMINAL, 5000, 0), box)

    def test_box_near_pole_stays_finite(self):
        box = bounding_box(89.99, 0.0, 5000)
        assert all(math.isfinite(v) for v in box)
