"""Best-effort replication of committed ledger transitions onto the chain.

Every mirrored entity has one ``ChainMirrorJob`` row. ``MirrorService.attempt``
is the only code path that talks to the chain on a job's behalf; ledger
transitions call it right after their commit and the reconciliation sweep
calls it again for whatever is still pending.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.constants import LEDGER
from app.db import SessionFactory, session_scope
from app.domain import as_utc
from app.errors import ChainMirrorFailure, NotFound
from app.models import (
    ActivityRecord,
    Bet,
    BetStatus,
    Market,
    MirrorKind,
    MirrorState,
    Outcome,
    UserAccount,
    utcnow,
)
from app.repositories import LedgerRepository, MirrorJobRepository, WalletRepository
from chain.client import ChainClient, ChainError, ChainTimeoutError, TxStatus
from chain.nonce import TreasuryNonceCoordinator

from .wallet_service import CustodialWalletManager

_TERMINAL_STATES = frozenset({MirrorState.CONFIRMED.value, MirrorState.ABANDONED.value})
_TREASURY_KINDS = frozenset(
    {
        MirrorKind.MARKET_CREATE.value,
        MirrorKind.MARKET_RESOLVE.value,
        MirrorKind.MARKET_CANCEL.value,
        MirrorKind.RUN_REWARD.value,
        MirrorKind.WELCOME_BONUS.value,
    }
)
_ERROR_LIMIT = 500


class MirrorNotReady(Exception):
    """A prerequisite mirror has not landed yet; try again later without spending a retry."""


class MirrorObsolete(Exception):
    """The on-chain counterpart can no longer be produced; the job is abandoned at once."""


def claim_entity_id(market_id: str, uid: str) -> str:
    return f"{market_id}:{uid}"


@dataclass(slots=True)
class MirrorJobSnapshot:
    job_id: str
    kind: str
    entity_id: str
    user_id: str | None
    retry_count: int
    pending_tx_hash: str | None = None
    pending_tx_nonce: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MirrorSuccess:
    tx_hash: str | None
    on_chain_id: int | None = None


@dataclass(slots=True)
class MirrorOutcome:
    job_id: str
    kind: str
    state: str
    retry_count: int
    tx_hash: str | None = None
    error: str | None = None
    attempted: bool = True


class MirrorService:
    def __init__(
        self,
        *,
        chain: ChainClient | None = None,
        wallets: CustodialWalletManager | None = None,
        nonce: TreasuryNonceCoordinator | None = None,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._scope = session_factory or session_scope
        self._chain = chain
        self._wallets = wallets or CustodialWalletManager(session_factory=self._scope)
        self._nonce = nonce
        self._clock = clock
        self._handlers: dict[str, Callable[[MirrorJobSnapshot], MirrorSuccess]] = {
            MirrorKind.MARKET_CREATE.value: self._mirror_market_create,
            MirrorKind.BET.value: self._mirror_bet,
            MirrorKind.MARKET_RESOLVE.value: self._mirror_market_resolve,
            MirrorKind.MARKET_CANCEL.value: self._mirror_market_cancel,
            MirrorKind.CLAIM.value: self._mirror_claim,
            MirrorKind.REFUND.value: self._mirror_refund,
            MirrorKind.RUN_REWARD.value: self._mirror_run_reward,
            MirrorKind.WELCOME_BONUS.value: self._mirror_welcome_bonus,
        }

    @property
    def chain(self) -> ChainClient:
        if self._chain is None:
            self._chain = ChainClient(self.settings)
        return self._chain

    @property
    def nonce(self) -> TreasuryNonceCoordinator:
        if self._nonce is None:
            self._nonce = TreasuryNonceCoordinator(
                self.chain.pending_nonce, session_factory=self._scope, settings=self.settings
            )
        return self._nonce

    # ------------------------------------------------------------------
    # Job lifecycle

    def enqueue(
        self,
        session: Session,
        kind: MirrorKind,
        entity_id: str,
        *,
        user_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Register a pending mirror inside the caller's ledger transaction."""

        job = MirrorJobRepository(session).enqueue(
            kind, entity_id, user_id=user_id, payload=payload
        )
        return job.job_id

    def attempt(self, job_id: str, *, consume_retry: bool = True) -> MirrorOutcome:
        """Try to land one job on chain.

        Confirmed and abandoned jobs are returned untouched. A failed attempt
        counts against the retry budget only when ``consume_retry`` is set;
        inline attempts made right after a ledger commit do not. A job whose
        last broadcast timed out is only sent again once that transaction is
        known to be dropped or reverted.
        """

        snapshot = self._load(job_id)
        if isinstance(snapshot, MirrorOutcome):
            return snapshot

        if snapshot.pending_tx_hash:
            try:
                landed = self._check_broadcast(snapshot)
            except Exception as exc:
                return self._record_failure(snapshot, exc, consume_retry=consume_retry)
            if landed is not None:
                return self._record_success(snapshot, landed)

        handler = self._handlers[snapshot.kind]
        try:
            success = handler(snapshot)
        except MirrorNotReady as exc:
            logger.info("Mirror {} {} deferred: {}", snapshot.kind, snapshot.entity_id, exc)
            return self._record_deferral(snapshot, str(exc))
        except MirrorObsolete as exc:
            return self._record_abandonment(snapshot, str(exc))
        except Exception as exc:
            return self._record_failure(snapshot, exc, consume_retry=consume_retry)
        return self._record_success(snapshot, success)

    def _load(self, job_id: str) -> MirrorJobSnapshot | MirrorOutcome:
        with self._scope() as session:
            job = MirrorJobRepository(session).get(job_id)
            if job is None:
                raise NotFound(f"Mirror job {job_id} does not exist")
            if job.state in _TERMINAL_STATES:
                return MirrorOutcome(
                    job_id=job.job_id,
                    kind=job.kind,
                    state=job.state,
                    retry_count=job.retry_count,
                    tx_hash=job.tx_hash,
                    error=job.last_error,
                    attempted=False,
                )
            return MirrorJobSnapshot(
                job_id=job.job_id,
                kind=job.kind,
                entity_id=job.entity_id,
                user_id=job.user_id,
                retry_count=job.retry_count,
                pending_tx_hash=job.pending_tx_hash,
                pending_tx_nonce=job.pending_tx_nonce,
                payload=dict(job.payload or {}),
            )

    def _record_success(self, snapshot: MirrorJobSnapshot, success: MirrorSuccess) -> MirrorOutcome:
        with self._scope() as session:
            job = MirrorJobRepository(session).get(snapshot.job_id, for_update=True)
            job.state = MirrorState.CONFIRMED.value
            job.tx_hash = success.tx_hash
            job.pending_tx_hash = None
            job.pending_tx_nonce = None
            job.last_error = None
            job.last_retry_at = self._clock()
            self._mark_entity(
                session,
                snapshot,
                MirrorState.CONFIRMED.value,
                tx_hash=success.tx_hash,
                on_chain_id=success.on_chain_id,
            )
            retry_count = job.retry_count
        logger.info(
            "Mirrored {} {} on chain (tx={})", snapshot.kind, snapshot.entity_id, success.tx_hash
        )
        return MirrorOutcome(
            job_id=snapshot.job_id,
            kind=snapshot.kind,
            state=MirrorState.CONFIRMED.value,
            retry_count=retry_count,
            tx_hash=success.tx_hash,
        )

    def _record_failure(
        self, snapshot: MirrorJobSnapshot, exc: Exception, *, consume_retry: bool
    ) -> MirrorOutcome:
        message = f"{type(exc).__name__}: {exc}"[:_ERROR_LIMIT]
        max_retries = self.settings.reconciliation_max_retries
        with self._scope() as session:
            job = MirrorJobRepository(session).get(snapshot.job_id, for_update=True)
            if consume_retry:
                job.retry_count += 1
            job.last_retry_at = self._clock()
            job.last_error = message
            if isinstance(exc, ChainTimeoutError) and exc.tx_hash:
                job.pending_tx_hash = exc.tx_hash
                job.pending_tx_nonce = exc.nonce
            if job.retry_count >= max_retries:
                job.state = MirrorState.ABANDONED.value
            state = job.state
            retry_count = job.retry_count
            self._mark_entity(session, snapshot, state)

        if state == MirrorState.ABANDONED.value:
            logger.error(
                "Abandoned mirror {} {} after {} failed attempts: {}",
                snapshot.kind,
                snapshot.entity_id,
                retry_count,
                message,
            )
        else:
            logger.warning(
                "Mirror {} {} failed ({}/{}), left pending: {}",
                snapshot.kind,
                snapshot.entity_id,
                retry_count,
                max_retries,
                message,
            )
        return MirrorOutcome(
            job_id=snapshot.job_id,
            kind=snapshot.kind,
            state=state,
            retry_count=retry_count,
            error=message,
        )

    def _check_broadcast(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess | None:
        tx_hash = snapshot.pending_tx_hash
        lookup = self.chain.lookup_transaction(tx_hash)
        if lookup.status == TxStatus.CONFIRMED:
            if snapshot.kind == MirrorKind.MARKET_CREATE.value and lookup.on_chain_id is None:
                raise ChainMirrorFailure(f"createMarket {tx_hash} did not report a market id")
            logger.info("Earlier broadcast {} for {} {} landed", tx_hash, snapshot.kind, snapshot.entity_id)
            return MirrorSuccess(tx_hash=tx_hash, on_chain_id=lookup.on_chain_id)
        if lookup.status == TxStatus.PENDING:
            raise ChainTimeoutError(
                f"Transaction {tx_hash} still awaiting a receipt",
                tx_hash=tx_hash,
                nonce=snapshot.pending_tx_nonce,
            )

        logger.warning(
            "Earlier broadcast {} for {} {} was {}; sending again",
            tx_hash,
            snapshot.kind,
            snapshot.entity_id,
            lookup.status.value,
        )
        if (
            lookup.status == TxStatus.DROPPED
            and snapshot.kind in _TREASURY_KINDS
            and snapshot.pending_tx_nonce is not None
        ):
            treasury = self._wallets.treasury_signer()
            self.nonce.rewind(treasury.address, snapshot.pending_tx_nonce)
        with self._scope() as session:
            job = MirrorJobRepository(session).get(snapshot.job_id, for_update=True)
            job.pending_tx_hash = None
            job.pending_tx_nonce = None
        snapshot.pending_tx_hash = None
        snapshot.pending_tx_nonce = None
        return None

    def _record_deferral(self, snapshot: MirrorJobSnapshot, reason: str) -> MirrorOutcome:
        with self._scope() as session:
            job = MirrorJobRepository(session).get(snapshot.job_id, for_update=True)
            job.last_error = reason[:_ERROR_LIMIT]
            retry_count = job.retry_count
        return MirrorOutcome(
            job_id=snapshot.job_id,
            kind=snapshot.kind,
            state=MirrorState.PENDING.value,
            retry_count=retry_count,
            error=reason,
            attempted=False,
        )

    def _record_abandonment(self, snapshot: MirrorJobSnapshot, reason: str) -> MirrorOutcome:
        with self._scope() as session:
            job = MirrorJobRepository(session).get(snapshot.job_id, for_update=True)
            job.state = MirrorState.ABANDONED.value
            job.last_error = reason[:_ERROR_LIMIT]
            job.last_retry_at = self._clock()
            retry_count = job.retry_count
            self._mark_entity(session, snapshot, MirrorState.ABANDONED.value)
        logger.error("Abandoned mirror {} {}: {}", snapshot.kind, snapshot.entity_id, reason)
        return MirrorOutcome(
            job_id=snapshot.job_id,
            kind=snapshot.kind,
            state=MirrorState.ABANDONED.value,
            retry_count=retry_count,
            error=reason,
        )

    def _mark_entity(
        self,
        session: Session,
        snapshot: MirrorJobSnapshot,
        state: str,
        *,
        tx_hash: str | None = None,
        on_chain_id: int | None = None,
    ) -> None:
        kind = snapshot.kind
        values: dict[str, Any] = {"chain_mirror_state": state}
        if tx_hash:
            values["tx_hash"] = tx_hash

        if kind == MirrorKind.MARKET_CREATE.value:
            if on_chain_id is not None:
                LedgerRepository(session).assign_on_chain_id(snapshot.entity_id, on_chain_id)
            session.execute(
                update(Market).where(Market.market_id == snapshot.entity_id).values(**values)
            )
        elif kind == MirrorKind.BET.value:
            session.execute(update(Bet).where(Bet.bet_id == snapshot.entity_id).values(**values))
        elif kind == MirrorKind.RUN_REWARD.value:
            session.execute(
                update(ActivityRecord)
                .where(ActivityRecord.activity_id == snapshot.entity_id)
                .values(**values)
            )
        elif kind == MirrorKind.WELCOME_BONUS.value:
            session.execute(
                update(UserAccount)
                .where(UserAccount.uid == snapshot.entity_id)
                .values(welcome_bonus_state=state)
            )
        elif kind in (MirrorKind.CLAIM.value, MirrorKind.REFUND.value):
            market_id = snapshot.payload.get("market_id")
            claim_values: dict[str, Any] = {"claim_status": state}
            if tx_hash:
                claim_values["claim_tx_hash"] = tx_hash
            settled = (
                BetStatus.WON.value if kind == MirrorKind.CLAIM.value else BetStatus.REFUNDED.value
            )
            session.execute(
                update(Bet)
                .where(
                    Bet.market_id == market_id,
                    Bet.user_id == snapshot.user_id,
                    Bet.status == settled,
                )
                .values(**claim_values)
            )

    # ------------------------------------------------------------------
    # Treasury-signed mirrors

    def _mirror_market_create(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        with self._scope() as session:
            market = LedgerRepository(session).get_market(snapshot.entity_id)
            if market is None:
                raise MirrorObsolete(f"Market {snapshot.entity_id} no longer exists")
            if market.on_chain_id is not None:
                return MirrorSuccess(tx_hash=market.tx_hash, on_chain_id=market.on_chain_id)
            title, description, deadline = market.title, market.description, market.deadline

        treasury = self._wallets.treasury_signer()
        created = self.nonce.run(
            treasury.address,
            lambda nonce: self.chain.create_market(
                treasury,
                title=title,
                description=description,
                deadline=as_utc(deadline),
                nonce=nonce,
            ),
        )
        if created.on_chain_id is None:
            raise ChainMirrorFailure(
                f"createMarket {created.tx_hash} did not report a market id"
            )
        return MirrorSuccess(tx_hash=created.tx_hash, on_chain_id=created.on_chain_id)

    def _mirror_market_resolve(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        on_chain_id = self._require_on_chain_id(snapshot.entity_id)
        outcome_yes = snapshot.payload.get("outcome") == Outcome.YES.value
        treasury = self._wallets.treasury_signer()
        result = self.nonce.run(
            treasury.address,
            lambda nonce: self.chain.resolve_market(
                treasury, on_chain_id, outcome_yes=outcome_yes, nonce=nonce
            ),
        )
        return MirrorSuccess(tx_hash=result.tx_hash)

    def _mirror_market_cancel(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        on_chain_id = self._require_on_chain_id(snapshot.entity_id)
        treasury = self._wallets.treasury_signer()
        result = self.nonce.run(
            treasury.address,
            lambda nonce: self.chain.cancel_market(treasury, on_chain_id, nonce=nonce),
        )
        return MirrorSuccess(tx_hash=result.tx_hash)

    def _mirror_run_reward(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        with self._scope() as session:
            record = session.get(ActivityRecord, snapshot.entity_id)
            if record is None:
                raise MirrorObsolete(f"Activity {snapshot.entity_id} no longer exists")
            amount = Decimal(record.tk_earned)
        return self._treasury_transfer(snapshot, amount)

    def _mirror_welcome_bonus(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        amount = Decimal(str(snapshot.payload.get("amount", LEDGER.welcome_bonus)))
        return self._treasury_transfer(snapshot, amount)

    def _treasury_transfer(self, snapshot: MirrorJobSnapshot, amount: Decimal) -> MirrorSuccess:
        if amount <= 0:
            raise MirrorObsolete("Nothing to transfer")
        with self._scope() as session:
            wallet = WalletRepository(session).get(snapshot.user_id)
            if wallet is None:
                raise MirrorNotReady(f"User {snapshot.user_id} has no custodial wallet yet")
            recipient = wallet.address
        treasury = self._wallets.treasury_signer()
        result = self.nonce.run(
            treasury.address,
            lambda nonce: self.chain.transfer_tokens(treasury, recipient, amount, nonce=nonce),
        )
        return MirrorSuccess(tx_hash=result.tx_hash)

    # ------------------------------------------------------------------
    # User-signed mirrors

    def _mirror_bet(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        with self._scope() as session:
            bet = session.get(Bet, snapshot.entity_id)
            if bet is None:
                raise MirrorObsolete(f"Bet {snapshot.entity_id} no longer exists")
            market = bet.market
            if self._settled_on_chain(session, market.market_id):
                raise MirrorObsolete(f"Market {market.market_id} already settled on chain")
            if market.on_chain_id is None:
                raise MirrorNotReady(f"Market {market.market_id} not created on chain yet")
            on_chain_id = market.on_chain_id
            is_yes = bet.position == Outcome.YES.value
            amount = Decimal(bet.amount)
            uid = bet.user_id

        signer = self._wallets.signer_for(uid)
        spender = self.chain.prediction_address
        if self.chain.token_allowance(signer.address, spender) < amount:
            try:
                self.chain.approve_tokens(signer, spender, amount)
            except ChainTimeoutError as exc:
                # The allowance is read again next attempt, so the approval hash is not kept.
                raise ChainError(str(exc)) from exc
        result = self.chain.place_bet(signer, on_chain_id, is_yes=is_yes, amount=amount)
        return MirrorSuccess(tx_hash=result.tx_hash)

    def _mirror_claim(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        on_chain_id = self._user_settlement_ready(snapshot, MirrorKind.MARKET_RESOLVE)
        signer = self._wallets.signer_for(snapshot.user_id)
        result = self.chain.claim_winnings(signer, on_chain_id)
        return MirrorSuccess(tx_hash=result.tx_hash)

    def _mirror_refund(self, snapshot: MirrorJobSnapshot) -> MirrorSuccess:
        on_chain_id = self._user_settlement_ready(snapshot, MirrorKind.MARKET_CANCEL)
        signer = self._wallets.signer_for(snapshot.user_id)
        result = self.chain.refund(signer, on_chain_id)
        return MirrorSuccess(tx_hash=result.tx_hash)

    # ------------------------------------------------------------------
    # Prerequisites

    def _require_on_chain_id(self, market_id: str) -> int:
        with self._scope() as session:
            market = LedgerRepository(session).get_market(market_id)
            if market is None:
                raise MirrorObsolete(f"Market {market_id} no longer exists")
            if market.on_chain_id is None:
                raise MirrorNotReady(f"Market {market_id} not created on chain yet")
            return market.on_chain_id

    def _user_settlement_ready(self, snapshot: MirrorJobSnapshot, settlement: MirrorKind) -> int:
        market_id = snapshot.payload.get("market_id")
        with self._scope() as session:
            settle_job = MirrorJobRepository(session).find(settlement, market_id)
            if settle_job is None or settle_job.state == MirrorState.ABANDONED.value:
                raise MirrorObsolete(f"Market {market_id} will not be settled on chain")
            if settle_job.state != MirrorState.CONFIRMED.value:
                raise MirrorNotReady(f"Market {market_id} not settled on chain yet")

            states = set(
                session.execute(
                    select(Bet.chain_mirror_state).where(
                        Bet.market_id == market_id, Bet.user_id == snapshot.user_id
                    )
                ).scalars()
            )
            if MirrorState.CONFIRMED.value not in states:
                if MirrorState.PENDING.value in states:
                    raise MirrorNotReady("User bets not mirrored on chain yet")
                raise MirrorObsolete("User has no bets on chain for this market")

            market = LedgerRepository(session).get_market(market_id)
            return market.on_chain_id

    def _settled_on_chain(self, session: Session, market_id: str) -> bool:
        repo = MirrorJobRepository(session)
        for kind in (MirrorKind.MARKET_RESOLVE, MirrorKind.MARKET_CANCEL):
            job = repo.find(kind, market_id)
            if job is not None and job.state == MirrorState.CONFIRMED.value:
                return True
        return False


__all__ = [
    "MirrorJobSnapshot",
    "MirrorNotReady",
    "MirrorObsolete",
    "MirrorOutcome",
    "MirrorService",
    "MirrorSuccess",
    "claim_entity_id",
]
