from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Ledger amounts carry the token's 18 decimal places.
Amount = Numeric(38, 18)


class MarketStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class Outcome(str, Enum):
    YES = "yes"
    NO = "no"


class BetStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"


class MirrorState(str, Enum):
    OFF_CHAIN = "off-chain"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


class MirrorKind(str, Enum):
    MARKET_CREATE = "market_create"
    BET = "bet"
    MARKET_RESOLVE = "market_resolve"
    MARKET_CANCEL = "market_cancel"
    CLAIM = "claim"
    REFUND = "refund"
    RUN_REWARD = "run_reward"
    WELCOME_BONUS = "welcome_bonus"


class ActivityStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"


TREASURY_NONCE_DOC = "treasury_nonce"
APP_CONFIG_DOC = "app"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserAccount(Base):
    __tablename__ = "user_accounts"

    uid: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    balance: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    wallet_address: Mapped[str | None] = mapped_column(String, nullable=True)
    total_distance_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    welcome_bonus_state: Mapped[str] = mapped_column(
        String, nullable=False, default=MirrorState.OFF_CHAIN.value
    )
    balance_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    wallet: Mapped[CustodialWallet | None] = relationship(
        "CustodialWallet", back_populates="account", uselist=False
    )
    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="user")


class CustodialWallet(Base):
    __tablename__ = "custodial_wallets"

    uid: Mapped[str] = mapped_column(String, ForeignKey("user_accounts.uid"), primary_key=True)
    address: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    encrypted_private_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Rows written before envelope encryption was introduced.
    legacy_private_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    account: Mapped[UserAccount] = relationship("UserAccount", back_populates="wallet")


class Market(Base):
    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    group_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    group_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=MarketStatus.OPEN.value)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)
    total_yes_amount: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    total_no_amount: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    total_volume: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    on_chain_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chain_mirror_state: Mapped[str] = mapped_column(
        String, nullable=False, default=MirrorState.OFF_CHAIN.value
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="market")


class Bet(Base):
    __tablename__ = "bets"

    bet_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("user_accounts.uid"), nullable=False)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), nullable=False)
    position: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=BetStatus.ACTIVE.value)
    payout: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    chain_mirror_state: Mapped[str] = mapped_column(
        String, nullable=False, default=MirrorState.OFF_CHAIN.value
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    claim_status: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    user: Mapped[UserAccount] = relationship("UserAccount", back_populates="bets")
    market: Mapped[Market] = relationship("Market", back_populates="bets")


class ActivityRecord(Base):
    __tablename__ = "activity_records"

    activity_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("user_accounts.uid"), nullable=False)
    submission_id: Mapped[str | None] = mapped_column(String, nullable=True)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    pace_min_per_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    points: Mapped[list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ActivityStatus.PENDING.value)
    tk_earned: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    validation_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    chain_mirror_state: Mapped[str] = mapped_column(
        String, nullable=False, default=MirrorState.OFF_CHAIN.value
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "submission_id", name="uq_activity_submission"),
    )


class ChainMirrorJob(Base):
    __tablename__ = "chain_mirror_jobs"

    job_id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    state: Mapped[str] = mapped_column(String, nullable=False, default=MirrorState.PENDING.value)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    # Broadcast whose receipt never arrived; looked up before sending again.
    pending_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    pending_tx_nonce: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("kind", "entity_id", name="uq_chain_mirror_entity"),
    )


class ConfigDocument(Base):
    """Singleton configuration rows: the treasury nonce lock and secret fallbacks."""

    __tablename__ = "config_documents"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    lock_id: Mapped[str | None] = mapped_column(String, nullable=True)
    lock_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
