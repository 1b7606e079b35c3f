from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class ErrorResponse(BaseModel):
    error: str
    message: str


class MarketCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str = Field(min_length=1)
    deadline: datetime
    image_url: str | None = None


class MarketReceipt(BaseModel):
    market_id: str
    chain_mirror_state: str
    on_chain_id: int | None = None

    model_config = {"from_attributes": True}


class MarketGroupOutcome(BaseModel):
    title: str = Field(min_length=1)
    deadline: datetime


class MarketGroupCreate(BaseModel):
    group_title: str = Field(min_length=1, alias="groupTitle")
    description: str = Field(min_length=1)
    category: str = Field(min_length=1)
    markets: list[MarketGroupOutcome]

    model_config = {"populate_by_name": True}


class MarketGroupReceipt(BaseModel):
    group_id: str
    group_title: str
    markets: list[MarketReceipt]

    model_config = {"from_attributes": True}


class MarketStatusOut(BaseModel):
    market_id: str
    status: str


class BetCreate(BaseModel):
    side: Literal["yes", "no"] | None = None
    is_yes: bool | None = Field(default=None, alias="isYes")
    amount: Decimal

    model_config = {"populate_by_name": True}

    @field_validator("side", mode="before")
    @classmethod
    def _lower_side(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _require_side(self) -> "BetCreate":
        if self.side is None and self.is_yes is None:
            raise ValueError("either side or isYes is required")
        return self

    @property
    def position(self) -> str:
        if self.side is not None:
            return self.side
        return "yes" if self.is_yes else "no"


class BetReceipt(BaseModel):
    bet_id: str
    market_id: str
    position: str
    amount: Decimal
    balance: Decimal
    chain_mirror_state: str

    model_config = {"from_attributes": True}


class ResolveRequest(BaseModel):
    outcome: Literal["yes", "no"]

    @field_validator("outcome", mode="before")
    @classmethod
    def _lower_outcome(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ResolutionOut(BaseModel):
    market_id: str
    resolution: str
    total_pool: Decimal
    winning_pool: Decimal
    winners: int
    losers: int
    total_payout: Decimal
    claims_attempted: int
    claims_deferred: int

    model_config = {"from_attributes": True}


class CancellationOut(BaseModel):
    market_id: str
    refunded_bets: int
    total_refunded: Decimal

    model_config = {"from_attributes": True}


class ClaimOut(BaseModel):
    market_id: str
    payout: Decimal
    claim_status: str | None = None

    model_config = {"from_attributes": True}


class GpsPointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    timestamp: float = Field(description="Milliseconds since the epoch")
    accuracy: float | None = None
    altitude: float | None = None
    speed: float | None = None


class ActivityCreate(BaseModel):
    distance_km: float = Field(ge=0, description="Distance reported by the client in kilometres")
    duration_seconds: float = Field(ge=0)
    points: list[GpsPointIn] = Field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    submission_id: str | None = Field(
        default=None,
        max_length=128,
        description="Client generated id; replays of the same id return the stored result",
    )


class ActivityResultOut(BaseModel):
    activity_id: str
    validated: bool
    tk_earned: Decimal
    errors: list[str] = Field(default_factory=list)
    duplicate: bool = False

    model_config = {"from_attributes": True}


class BalanceOut(BaseModel):
    uid: str
    balance: Decimal
    wallet_address: str | None = None
    total_distance_km: float
    total_runs: int
    created: bool = False

    model_config = {"from_attributes": True}


class TreasuryStatusOut(BaseModel):
    treasury_address: str
    native_balance: Decimal
    token_balance: Decimal
    gas_status: str
    pending_ops: dict[str, int]
    abandoned_ops: dict[str, int]
    platform_stats: dict[str, Any]
    balance_error: str | None = None

    model_config = {"from_attributes": True}
