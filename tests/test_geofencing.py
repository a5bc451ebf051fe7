"""
Tests for great-circle distance, geofences and coordinate validation.
"""

import pytest

from app.core.geofencing import (
    GeoPoint,
    calculate_distance,
    circle_boundary,
    distance,
    is_within_geofence,
    stop_geofence,
    validate_coordinates,
)


A = GeoPoint(0.0, 0.0)
B = GeoPoint(0.01, 0.0)
C = GeoPoint(0.01, 0.02)


class TestDistance:
    def test_zero_for_identical_points(self):
        assert calculate_distance(6.5244, 3.3792, 6.5244, 3.3792) == 0.0

    def test_symmetric(self):
        assert distance(A, C) == pytest.approx(distance(C, A))

    def test_one_hundredth_degree_of_latitude(self):
        assert distance(A, B) == pytest.approx(1.11, abs=0.01)

    def test_longitude_scaled_by_latitude(self):
        assert distance(B, C) == pytest.approx(2.22, abs=0.01)

    def test_antipodal_points_do_not_overflow(self):
        assert calculate_distance(0, 0, 0, 180) == pytest.approx(20015.09, abs=0.1)


class TestGeofence:
    def test_center_is_inside(self):
        assert is_within_geofence(A, A, 100)

    def test_point_50m_away_is_inside_100m_fence(self):
        nearby = GeoPoint(0.00045, 0.0)
        assert is_within_geofence(nearby, A, 100)

    def test_point_1km_away_is_outside(self):
        assert not is_within_geofence(B, A, 100)


class TestCircleBoundary:
    def test_closed_ring_every_ten_degrees(self):
        points = circle_boundary(A, 100)
        assert len(points) == 37
        assert points[0].latitude == pytest.approx(points[-1].latitude)
        assert points[0].longitude == pytest.approx(points[-1].longitude, abs=1e-12)

    def test_points_lie_on_the_radius(self):
        for point in circle_boundary(B, 250, step_degrees=45):
            assert distance(point, B) * 1000 == pytest.approx(250, rel=0.01)

    def test_rejects_non_positive_step(self):
        with pytest.raises(ValueError):
            circle_boundary(A, 100, step_degrees=0)

    def test_stop_geofence_descriptor(self):
        fence = stop_geofence(0.01, 0.02, radius_meters=150)
        assert fence["type"] == "circle"
        assert fence["center"] == {"lat": 0.01, "lng": 0.02}
        assert fence["radius"] == 150
        assert len(fence["coordinates"]) == 37


class TestValidateCoordinates:
    def test_valid(self):
        assert validate_coordinates(-33.9, 151.2) == []

    def test_bad_latitude_and_longitude(self):
        errors = validate_coordinates(91, -181)
        assert len(errors) == 2
        assert "latitude" in errors[0]
        assert "longitude" in errors[1]
