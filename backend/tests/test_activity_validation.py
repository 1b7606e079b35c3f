import pytest

from app.core.constants import ACTIVITY_LIMITS
from app.domain import ActivitySubmission, GpsPoint
from app.services.activity_validation import haversine_distance_m, validate_activity

METRES_PER_DEGREE = 6_371_000.0 * 3.141592653589793 / 180


def _track(distance_km: float, duration_s: float, *, interval_s: float = 10.0) -> list[GpsPoint]:
    """Straight northbound track sampled every ``interval_s`` seconds."""

    steps = int(duration_s // interval_s)
    step_deg = distance_km * 1000 / steps / METRES_PER_DEGREE
    start_ms = 1_700_000_000_000
    return [
        GpsPoint(lat=1.0 + index * step_deg, lng=103.8, timestamp=start_ms + index * interval_s * 1000)
        for index in range(steps + 1)
    ]


def test_haversine_one_degree_of_latitude():
    """A degree of latitude is roughly 111 km on the reference sphere."""

    assert haversine_distance_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(METRES_PER_DEGREE)
    assert haversine_distance_m(10.0, 20.0, 10.0, 20.0) == 0.0


def test_valid_run_passes_all_checks():
    """A 5 km run in 25 minutes with a matching dense track is accepted."""

    record = ActivitySubmission(distance_km=5.0, duration_seconds=1500, points=_track(5.0, 1500))

    result = validate_activity(record)

    assert result.valid is True
    assert result.errors == []
    assert result.gps_distance_km == pytest.approx(5.0, rel=1e-6)


def test_gps_distance_mismatch_is_rejected():
    """Reported distance far from the GPS track distance is flagged."""

    record = ActivitySubmission(distance_km=5.0, duration_seconds=1500, points=_track(3.0, 1500))

    result = validate_activity(record)

    assert result.valid is False
    assert len(result.errors) == 1
    assert result.errors[0].startswith("GPS distance (3.00 km) differs from reported (5.00 km)")


def test_average_speed_above_limit_is_rejected():
    """30 km/h exceeds the 25 km/h running ceiling."""

    record = ActivitySubmission(distance_km=5.0, duration_seconds=600, points=_track(5.0, 600))

    result = validate_activity(record)

    assert result.valid is False
    assert "Average speed 30.0 km/h exceeds maximum 25 km/h" in result.errors


def test_missing_points_stops_after_bounds_checks():
    """Without GPS points only the bounds errors and the missing-points error are reported."""

    record = ActivitySubmission(distance_km=0.3, duration_seconds=600, points=[])

    result = validate_activity(record)

    assert result.valid is False
    assert result.errors == [
        "Distance 0.30 km is below minimum 0.5 km",
        "No GPS points provided",
    ]
    assert result.gps_distance_km is None


def test_distance_above_maximum_is_rejected():
    record = ActivitySubmission(distance_km=60.0, duration_seconds=6 * 3600, points=[])

    result = validate_activity(record)

    assert "Distance 60.00 km exceeds maximum 50 km" in result.errors


def test_sparse_track_is_rejected():
    """Fewer than half the expected fixes fails the density check."""

    sparse = _track(5.0, 1500, interval_s=60)

    result = validate_activity(ActivitySubmission(distance_km=5.0, duration_seconds=1500, points=sparse))

    assert result.valid is False
    assert result.errors == [f"Insufficient GPS points: {len(sparse)} (expected at least 75)"]


def test_teleporting_segments_are_counted():
    """A track whose fixes jump faster than the buffered limit fails the segment check."""

    points = _track(5.0, 1500)
    # 0.6 s between fixes puts every segment near 200 km/h.
    for index, point in enumerate(points):
        point.timestamp = points[0].timestamp + index * 600

    result = validate_activity(
        ActivitySubmission(distance_km=5.0, duration_seconds=1500, points=points), ACTIVITY_LIMITS
    )

    segments = len(points) - 1
    assert f"{segments} of {segments} GPS segments exceed speed limit" in result.errors
