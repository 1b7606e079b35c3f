"""Monetary and activity constants shared by the ledger and the validator."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class LedgerConstants:
    fee_rate: Decimal = Decimal("0.02")
    welcome_bonus: Decimal = Decimal("5")
    reward_per_km: Decimal = Decimal("10")
    max_runs_per_day: int = 10


@dataclass(frozen=True, slots=True)
class ActivityLimits:
    min_distance_km: float = 0.5
    max_distance_km: float = 50.0
    max_speed_kmh: float = 25.0
    distance_tolerance: float = 0.20
    # one GPS fix per this many seconds is the expected sampling rate
    expected_point_interval_seconds: float = 10.0
    min_point_density: float = 0.5
    segment_speed_buffer: float = 1.5
    max_segment_violation_ratio: float = 0.3


LEDGER = LedgerConstants()
ACTIVITY_LIMITS = ActivityLimits()

EARTH_RADIUS_M = 6_371_000.0

# 18 decimal places, matching the token's on-chain precision
AMOUNT_QUANTUM = Decimal("1e-18")


__all__ = [
    "ACTIVITY_LIMITS",
    "AMOUNT_QUANTUM",
    "ActivityLimits",
    "EARTH_RADIUS_M",
    "LEDGER",
    "LedgerConstants",
]
