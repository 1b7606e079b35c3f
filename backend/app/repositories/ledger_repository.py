"""Accounts, markets and bets of the off-chain ledger."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from app.models import Bet, BetStatus, Market, MarketStatus, Outcome, UserAccount


class LedgerRepository:
    """Balance and pool totals only move through SQL-side increments."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Accounts

    def get_account(self, uid: str, *, for_update: bool = False) -> UserAccount | None:
        stmt = select(UserAccount).where(UserAccount.uid == uid)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def create_account(
        self,
        uid: str,
        *,
        email: str | None,
        display_name: str | None,
        initial_balance: Decimal,
    ) -> UserAccount:
        account = UserAccount(
            uid=uid,
            email=email,
            display_name=display_name,
            balance=initial_balance,
        )
        self._session.add(account)
        self._session.flush()
        return account

    def balance_of(self, uid: str) -> Decimal | None:
        return self._session.execute(
            select(UserAccount.balance).where(UserAccount.uid == uid)
        ).scalar_one_or_none()

    def credit(self, uid: str, amount: Decimal) -> None:
        self._session.execute(
            update(UserAccount)
            .where(UserAccount.uid == uid)
            .values(balance=UserAccount.balance + amount)
            .execution_options(synchronize_session=False)
        )
        self._expire(UserAccount, uid, ["balance"])

    def debit(self, uid: str, amount: Decimal) -> bool:
        """Subtract ``amount`` only when the balance covers it."""

        result = self._session.execute(
            update(UserAccount)
            .where(UserAccount.uid == uid, UserAccount.balance >= amount)
            .values(balance=UserAccount.balance - amount)
            .execution_options(synchronize_session=False)
        )
        self._expire(UserAccount, uid, ["balance"])
        return result.rowcount == 1

    def record_activity_totals(self, uid: str, distance_km: float) -> None:
        self._session.execute(
            update(UserAccount)
            .where(UserAccount.uid == uid)
            .values(
                total_distance_km=UserAccount.total_distance_km + distance_km,
                total_runs=UserAccount.total_runs + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self._expire(UserAccount, uid, ["total_distance_km", "total_runs"])

    def overwrite_synced_balance(self, uid: str, balance: Decimal, *, synced_at) -> None:
        self._session.execute(
            update(UserAccount)
            .where(UserAccount.uid == uid)
            .values(balance=balance, balance_synced_at=synced_at, last_sync_error=None)
            .execution_options(synchronize_session=False)
        )
        self._expire(UserAccount, uid, ["balance", "balance_synced_at", "last_sync_error"])

    def record_sync_error(self, uid: str, message: str) -> None:
        self._session.execute(
            update(UserAccount)
            .where(UserAccount.uid == uid)
            .values(last_sync_error=message)
            .execution_options(synchronize_session=False)
        )

    def wallet_accounts_page(self, *, after_uid: str | None, limit: int) -> list[tuple[str, str]]:
        stmt = (
            select(UserAccount.uid, UserAccount.wallet_address)
            .where(UserAccount.wallet_address.is_not(None))
            .order_by(UserAccount.uid)
            .limit(limit)
        )
        if after_uid is not None:
            stmt = stmt.where(UserAccount.uid > after_uid)
        return [(row.uid, row.wallet_address) for row in self._session.execute(stmt)]

    # ------------------------------------------------------------------
    # Markets

    def get_market(self, market_id: str, *, for_update: bool = False) -> Market | None:
        stmt = select(Market).where(Market.market_id == market_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def add_market(self, market: Market) -> Market:
        self._session.add(market)
        self._session.flush()
        return market

    def add_to_pool(self, market_id: str, position: str, amount: Decimal) -> None:
        side_column = (
            Market.total_yes_amount if position == Outcome.YES.value else Market.total_no_amount
        )
        self._session.execute(
            update(Market)
            .where(Market.market_id == market_id)
            .values(
                {
                    side_column: side_column + amount,
                    Market.total_volume: Market.total_volume + amount,
                }
            )
            .execution_options(synchronize_session=False)
        )
        self._expire(Market, market_id, ["total_yes_amount", "total_no_amount", "total_volume"])

    def assign_on_chain_id(self, market_id: str, on_chain_id: int) -> bool:
        """Set the chain id once; an already assigned id is never replaced."""

        result = self._session.execute(
            update(Market)
            .where(Market.market_id == market_id, Market.on_chain_id.is_(None))
            .values(on_chain_id=on_chain_id)
            .execution_options(synchronize_session=False)
        )
        self._expire(Market, market_id, ["on_chain_id"])
        return result.rowcount == 1

    def markets_pending_creation(self, *, limit: int | None = None) -> Sequence[Market]:
        stmt = (
            select(Market)
            .where(Market.on_chain_id.is_(None))
            .where(Market.status.in_([MarketStatus.OPEN.value, MarketStatus.CLOSED.value]))
            .order_by(Market.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        return self._session.execute(stmt).scalars().all()

    # ------------------------------------------------------------------
    # Bets

    def add_bet(self, bet: Bet) -> Bet:
        self._session.add(bet)
        self._session.flush()
        return bet

    def get_bet(self, bet_id: str) -> Bet | None:
        return self._session.get(Bet, bet_id)

    def bets_for_market(self, market_id: str, *, for_update: bool = False) -> Sequence[Bet]:
        stmt = select(Bet).where(Bet.market_id == market_id).order_by(Bet.created_at, Bet.bet_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().all()

    def user_bets_for_market(self, market_id: str, uid: str) -> Sequence[Bet]:
        stmt = (
            select(Bet)
            .where(Bet.market_id == market_id, Bet.user_id == uid)
            .order_by(Bet.created_at, Bet.bet_id)
        )
        return self._session.execute(stmt).scalars().all()

    def side_totals(self, market_id: str) -> dict[str, Decimal]:
        rows = self._session.execute(
            select(Bet.position, func.coalesce(func.sum(Bet.amount), 0))
            .where(Bet.market_id == market_id)
            .group_by(Bet.position)
        ).all()
        totals = {Outcome.YES.value: Decimal("0"), Outcome.NO.value: Decimal("0")}
        for position, total in rows:
            totals[position] = Decimal(str(total))
        return totals

    # ------------------------------------------------------------------
    # Stats

    def platform_stats(self) -> dict[str, Any]:
        market_count = self._session.execute(select(func.count(Market.market_id))).scalar_one()
        open_count = self._session.execute(
            select(func.count(Market.market_id)).where(Market.status == MarketStatus.OPEN.value)
        ).scalar_one()
        volume = self._session.execute(
            select(func.coalesce(func.sum(Market.total_volume), 0))
        ).scalar_one()
        users = self._session.execute(select(func.count(UserAccount.uid))).scalar_one()
        distributed = self._session.execute(
            select(func.coalesce(func.sum(UserAccount.balance), 0))
        ).scalar_one()
        active_bets = self._session.execute(
            select(func.count(Bet.bet_id)).where(Bet.status == BetStatus.ACTIVE.value)
        ).scalar_one()
        return {
            "total_markets": int(market_count),
            "open_markets": int(open_count),
            "total_volume": Decimal(str(volume)),
            "total_users": int(users),
            "total_balance": Decimal(str(distributed)),
            "active_bets": int(active_bets),
        }

    # ------------------------------------------------------------------
    # Internals

    def _expire(self, entity, ident: str, attributes: list[str]) -> None:
        cached = self._session.identity_map.get(identity_key(entity, ident))
        if cached is not None:
            self._session.expire(cached, attributes)
