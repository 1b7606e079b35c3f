"""Typed domain representations shared by services, pipelines, and the API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from stores without tz support."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class Caller:
    """Identity forwarded by the authentication layer."""

    uid: str
    email: str | None = None
    is_admin: bool = False


@dataclass(slots=True)
class GpsPoint:
    lat: float
    lng: float
    # milliseconds since the epoch
    timestamp: float
    accuracy: float | None = None
    altitude: float | None = None
    speed: float | None = None

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> GpsPoint:
        return cls(
            lat=float(payload["lat"]),
            lng=float(payload["lng"]),
            timestamp=float(payload["timestamp"]),
            accuracy=_optional_float(payload.get("accuracy")),
            altitude=_optional_float(payload.get("altitude")),
            speed=_optional_float(payload.get("speed")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp,
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "speed": self.speed,
        }


@dataclass(slots=True)
class ActivitySubmission:
    """A physical-activity session as reported by the client."""

    distance_km: float
    duration_seconds: float
    points: list[GpsPoint] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    submission_id: str | None = None


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    gps_distance_km: float | None = None


@dataclass(slots=True)
class ActivityResult:
    activity_id: str
    validated: bool
    tk_earned: Decimal
    errors: list[str] = field(default_factory=list)
    duplicate: bool = False


@dataclass(slots=True)
class MarketReceipt:
    market_id: str
    chain_mirror_state: str
    on_chain_id: int | None = None


@dataclass(slots=True)
class GroupOutcome:
    """One market of a group: its own title and deadline under the shared group text."""

    title: str
    deadline: datetime | None


@dataclass(slots=True)
class MarketGroupReceipt:
    group_id: str
    group_title: str
    markets: list[MarketReceipt] = field(default_factory=list)


@dataclass(slots=True)
class BetReceipt:
    bet_id: str
    market_id: str
    position: str
    amount: Decimal
    balance: Decimal
    chain_mirror_state: str


@dataclass(slots=True)
class ResolutionSummary:
    market_id: str
    resolution: str
    total_pool: Decimal
    winning_pool: Decimal
    winners: int
    losers: int
    total_payout: Decimal
    claims_attempted: int = 0
    claims_deferred: int = 0


@dataclass(slots=True)
class CancellationSummary:
    market_id: str
    refunded_bets: int
    total_refunded: Decimal


@dataclass(slots=True)
class ClaimSummary:
    market_id: str
    payout: Decimal
    claim_status: str | None = None


@dataclass(slots=True)
class AccountSnapshot:
    uid: str
    balance: Decimal
    wallet_address: str | None
    total_distance_km: float
    total_runs: int
    created: bool = False


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)
