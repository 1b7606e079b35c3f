"""Bounds checks applied to an activity before it may mint ledger credit."""

from __future__ import annotations

import math

from app.core.constants import ACTIVITY_LIMITS, EARTH_RADIUS_M, ActivityLimits
from app.domain import ActivitySubmission, ValidationResult


def haversine_distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in metres."""

    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def validate_activity(
    record: ActivitySubmission, limits: ActivityLimits = ACTIVITY_LIMITS
) -> ValidationResult:
    """Collect every violation; any single one rejects the record."""

    errors: list[str] = []
    distance = record.distance_km
    duration = record.duration_seconds

    if distance < limits.min_distance_km:
        errors.append(
            f"Distance {distance:.2f} km is below minimum {limits.min_distance_km:g} km"
        )
    if distance > limits.max_distance_km:
        errors.append(
            f"Distance {distance:.2f} km exceeds maximum {limits.max_distance_km:g} km"
        )

    duration_hours = duration / 3600
    if duration_hours > 0:
        avg_speed = distance / duration_hours
        if avg_speed > limits.max_speed_kmh:
            errors.append(
                f"Average speed {avg_speed:.1f} km/h exceeds maximum {limits.max_speed_kmh:g} km/h"
            )

    points = record.points
    if not points:
        errors.append("No GPS points provided")
        return ValidationResult(valid=False, errors=errors)

    min_expected = max(1, math.floor(duration / limits.expected_point_interval_seconds))
    required = min_expected * limits.min_point_density
    if len(points) < required:
        errors.append(
            f"Insufficient GPS points: {len(points)} (expected at least {math.floor(required)})"
        )

    gps_distance_m = 0.0
    violations = 0
    segment_limit = limits.max_speed_kmh * limits.segment_speed_buffer
    for prev, curr in zip(points, points[1:]):
        segment_m = haversine_distance_m(prev.lat, prev.lng, curr.lat, curr.lng)
        gps_distance_m += segment_m
        elapsed_s = (curr.timestamp - prev.timestamp) / 1000
        if elapsed_s > 0:
            segment_kmh = (segment_m / 1000) / (elapsed_s / 3600)
            if segment_kmh > segment_limit:
                violations += 1

    gps_km = gps_distance_m / 1000
    difference = abs(gps_km - distance) / max(distance, 0.001)
    if difference > limits.distance_tolerance:
        errors.append(
            f"GPS distance ({gps_km:.2f} km) differs from reported ({distance:.2f} km) "
            f"by {difference * 100:.0f}%"
        )

    segments = len(points) - 1
    if segments > 0 and violations / segments > limits.max_segment_violation_ratio:
        errors.append(f"{violations} of {segments} GPS segments exceed speed limit")

    return ValidationResult(valid=not errors, errors=errors, gps_distance_km=gps_km)


__all__ = ["haversine_distance_m", "validate_activity"]
