"""Operator view of the treasury and of mirror jobs that need attention."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, session_scope
from app.repositories import LedgerRepository, MirrorJobRepository
from chain.client import ChainClient

from .wallet_service import CustodialWalletManager

GAS_OK = "ok"
GAS_LOW = "low"
GAS_CRITICAL = "critical"


def gas_status(balance: Decimal, settings: Settings) -> str:
    if balance < settings.critical_gas_threshold:
        return GAS_CRITICAL
    if balance < settings.low_gas_threshold:
        return GAS_LOW
    return GAS_OK


@dataclass(slots=True)
class TreasuryStatus:
    treasury_address: str = ""
    native_balance: Decimal = Decimal("0")
    token_balance: Decimal = Decimal("0")
    gas_status: str = GAS_OK
    pending_ops: dict[str, int] = field(default_factory=dict)
    abandoned_ops: dict[str, int] = field(default_factory=dict)
    platform_stats: dict[str, Any] = field(default_factory=dict)
    balance_error: str | None = None


class TreasuryService:
    def __init__(
        self,
        *,
        chain: ChainClient | None = None,
        wallets: CustodialWalletManager | None = None,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._scope = session_factory or session_scope
        self._chain = chain
        self._wallets = wallets or CustodialWalletManager(session_factory=self._scope)

    @property
    def chain(self) -> ChainClient:
        if self._chain is None:
            self._chain = ChainClient(self.settings)
        return self._chain

    def status(self) -> TreasuryStatus:
        status = TreasuryStatus()
        try:
            address = self._wallets.treasury_signer().address
            status.treasury_address = address
            status.native_balance = self.chain.native_balance(address)
            status.token_balance = self.chain.token_balance(address)
            status.gas_status = gas_status(status.native_balance, self.settings)
        except Exception as exc:
            logger.error("Failed to read treasury balances: {}", exc)
            status.balance_error = str(exc)

        with self._scope() as session:
            counts = MirrorJobRepository(session).counts_by_kind()
            status.platform_stats = LedgerRepository(session).platform_stats()

        status.pending_ops = {kind: states.get("pending", 0) for kind, states in counts.items()}
        status.abandoned_ops = {kind: states.get("abandoned", 0) for kind, states in counts.items()}
        return status

    def check_gas(self) -> str:
        """Log the treasury's native balance at a level matching its gas status."""

        address = self._wallets.treasury_signer().address
        balance = self.chain.native_balance(address)
        level = gas_status(balance, self.settings)
        if level == GAS_CRITICAL:
            logger.error(
                "CRITICAL: treasury {} gas balance {} below {}",
                address,
                balance,
                self.settings.critical_gas_threshold,
            )
        elif level == GAS_LOW:
            logger.warning(
                "Treasury {} gas balance {} below {}", address, balance, self.settings.low_gas_threshold
            )
        else:
            logger.info("Treasury {} gas balance OK: {}", address, balance)
        return level


__all__ = ["GAS_CRITICAL", "GAS_LOW", "GAS_OK", "TreasuryService", "TreasuryStatus", "gas_status"]
