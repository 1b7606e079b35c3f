"""Off-chain ledger transitions.

Each operation commits one atomic transaction against the ledger store and
only then asks the mirror service to replicate it on chain. Transaction
bodies may be re-executed on write conflicts, so they never touch the chain.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.constants import AMOUNT_QUANTUM, LEDGER, LedgerConstants
from app.db import SessionFactory, run_in_transaction, session_scope
from app.domain import (
    AccountSnapshot,
    BetReceipt,
    Caller,
    CancellationSummary,
    ClaimSummary,
    GroupOutcome,
    MarketGroupReceipt,
    MarketReceipt,
    ResolutionSummary,
    as_utc,
)
from app.errors import (
    FailedPrecondition,
    InsufficientBalance,
    InvalidArgument,
    MarketNotOpen,
    NotFound,
    PermissionDenied,
    Unauthenticated,
)
from app.models import (
    Bet,
    BetStatus,
    Market,
    MarketStatus,
    MirrorKind,
    MirrorState,
    Outcome,
    UserAccount,
    utcnow,
)
from app.repositories import LedgerRepository, MirrorJobRepository

from .mirror_service import MirrorService, claim_entity_id
from .wallet_service import CustodialWalletManager

_SETTLEABLE = (MarketStatus.OPEN.value, MarketStatus.CLOSED.value)


def parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidArgument("Amount must be a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidArgument("Bet amount must be positive.")
    with localcontext() as ctx:
        ctx.prec = 60
        return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def parse_outcome(value: Any) -> str:
    try:
        return Outcome(str(value).lower()).value
    except ValueError as exc:
        raise InvalidArgument("Outcome must be 'yes' or 'no'") from exc


def compute_payout(
    amount: Decimal, winning_pool: Decimal, total_pool: Decimal, fee_rate: Decimal
) -> Decimal:
    """Proportional share of the pool net of the platform fee, truncated to token precision."""

    if winning_pool <= 0:
        return Decimal("0")
    with localcontext() as ctx:
        ctx.prec = 60
        share = amount * total_pool * (Decimal("1") - fee_rate) / winning_pool
        return share.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


class LedgerService:
    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        mirror: MirrorService | None = None,
        wallets: CustodialWalletManager | None = None,
        settings: Settings | None = None,
        constants: LedgerConstants = LEDGER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._scope = session_factory or session_scope
        self._wallets = wallets
        self._mirror = mirror
        self.constants = constants
        self._clock = clock

    @property
    def wallets(self) -> CustodialWalletManager:
        if self._wallets is None:
            self._wallets = CustodialWalletManager(session_factory=self._scope)
        return self._wallets

    @property
    def mirror(self) -> MirrorService:
        if self._mirror is None:
            self._mirror = MirrorService(
                wallets=self.wallets, session_factory=self._scope, settings=self.settings
            )
        return self._mirror

    # ------------------------------------------------------------------
    # Accounts

    def ensure_account(
        self, uid: str, *, email: str | None = None, display_name: str | None = None
    ) -> AccountSnapshot:
        """Provision a ledger account with the welcome bonus as its opening balance."""

        if not uid:
            raise Unauthenticated("You must be signed in.")
        bonus = self.constants.welcome_bonus

        def body(session: Session) -> tuple[bool, str | None]:
            repo = LedgerRepository(session)
            if repo.get_account(uid) is not None:
                return False, None
            account = repo.create_account(
                uid, email=email, display_name=display_name, initial_balance=bonus
            )
            account.welcome_bonus_state = MirrorState.PENDING.value
            job_id = self.mirror.enqueue(
                session,
                MirrorKind.WELCOME_BONUS,
                uid,
                user_id=uid,
                payload={"amount": str(bonus)},
            )
            return True, job_id

        try:
            created, job_id = run_in_transaction(body, session_factory=self._scope)
        except IntegrityError:
            logger.info("Account {} was provisioned concurrently", uid)
            created, job_id = False, None

        self.wallets.create_wallet(uid)
        if created:
            logger.info("Provisioned account {} with welcome bonus {}", uid, bonus)
            self._mirror_inline(job_id)

        snapshot = self.get_balance(uid)
        snapshot.created = created
        return snapshot

    def get_balance(self, uid: str) -> AccountSnapshot:
        with self._scope() as session:
            account = LedgerRepository(session).get_account(uid)
            if account is None:
                raise NotFound("User profile not found.")
            return _account_snapshot(account)

    # ------------------------------------------------------------------
    # Markets

    def create_market(
        self,
        caller: Caller | None,
        *,
        title: str,
        description: str,
        category: str | None,
        deadline: datetime,
        image_url: str | None = None,
    ) -> MarketReceipt:
        self.require_admin(caller)
        if not title or not description or not category or deadline is None:
            raise InvalidArgument("title, description, category, and deadline are required.")
        deadline = as_utc(deadline)
        if deadline <= self._clock():
            raise InvalidArgument("deadline must be a valid future date.")

        market_id = uuid.uuid4().hex

        def body(session: Session) -> str | None:
            return self._add_market(
                session,
                market_id,
                title=title,
                description=description,
                category=category,
                deadline=deadline,
                created_by=caller.uid,
                image_url=image_url,
            )

        job_id = run_in_transaction(body, session_factory=self._scope)
        logger.info("Market {} created by {}: {}", market_id, caller.uid, title)
        self._mirror_inline(job_id)
        return self._market_receipts([market_id])[0]

    def create_market_group(
        self,
        caller: Caller | None,
        *,
        group_title: str,
        description: str,
        category: str | None,
        markets: Sequence[GroupOutcome],
    ) -> MarketGroupReceipt:
        """Open two or more markets sharing one group title, all in a single transaction."""

        self.require_admin(caller)
        if not group_title or not description or not category:
            raise InvalidArgument("groupTitle, description, and category are required.")
        if len(markets) < 2:
            raise InvalidArgument("At least 2 market outcomes are required for a group.")
        now = self._clock()
        outcomes: list[tuple[str, str, datetime]] = []
        for outcome in markets:
            if not outcome.title or outcome.deadline is None:
                raise InvalidArgument("Each market outcome must have a title and deadline.")
            deadline = as_utc(outcome.deadline)
            if deadline <= now:
                raise InvalidArgument(f'Deadline for "{outcome.title}" must be a valid future date.')
            outcomes.append((uuid.uuid4().hex, outcome.title, deadline))

        group_id = uuid.uuid4().hex

        def body(session: Session) -> list[str]:
            jobs = [
                self._add_market(
                    session,
                    market_id,
                    title=title,
                    description=description,
                    category=category,
                    deadline=deadline,
                    created_by=caller.uid,
                    group_id=group_id,
                    group_title=group_title,
                )
                for market_id, title, deadline in outcomes
            ]
            return [job_id for job_id in jobs if job_id]

        job_ids = run_in_transaction(body, session_factory=self._scope)
        logger.info(
            "Market group {} created by {}: {} ({} markets)",
            group_id,
            caller.uid,
            group_title,
            len(outcomes),
        )
        for job_id in job_ids:
            self._mirror_inline(job_id)
        return MarketGroupReceipt(
            group_id=group_id,
            group_title=group_title,
            markets=self._market_receipts([market_id for market_id, _, _ in outcomes]),
        )

    def close_market(self, caller: Caller | None, market_id: str) -> str:
        """Stop accepting bets ahead of resolution."""

        self.require_admin(caller)

        def body(session: Session) -> str:
            market = LedgerRepository(session).get_market(market_id, for_update=True)
            if market is None:
                raise NotFound("Market not found.")
            if market.status != MarketStatus.OPEN.value:
                raise FailedPrecondition(f"Market is already {market.status}.")
            market.status = MarketStatus.CLOSED.value
            return market.status

        status = run_in_transaction(body, session_factory=self._scope)
        logger.info("Market {} closed by {}", market_id, caller.uid)
        return status

    # ------------------------------------------------------------------
    # Bets

    def place_bet(
        self, caller: Caller | None, market_id: str, *, side: Any, amount: Any
    ) -> BetReceipt:
        uid = self._require_user(caller)
        if not market_id:
            raise InvalidArgument("marketId, side, and amount are required.")
        position = parse_outcome(side)
        stake = parse_amount(amount)
        bet_id = uuid.uuid4().hex
        mirroring = self.settings.prediction_mirroring_enabled

        def body(session: Session) -> tuple[Decimal, str | None]:
            repo = LedgerRepository(session)
            market = repo.get_market(market_id, for_update=True)
            if market is None:
                raise NotFound("Market not found.")
            if market.status != MarketStatus.OPEN.value:
                raise MarketNotOpen("Market is not open for betting.")
            if repo.get_account(uid, for_update=True) is None:
                raise NotFound("User profile not found.")
            if not repo.debit(uid, stake):
                raise InsufficientBalance("Insufficient balance.")

            repo.add_to_pool(market_id, position, stake)
            repo.add_bet(
                Bet(
                    bet_id=bet_id,
                    user_id=uid,
                    market_id=market_id,
                    position=position,
                    amount=stake,
                    status=BetStatus.ACTIVE.value,
                    payout=Decimal("0"),
                    chain_mirror_state=(
                        MirrorState.PENDING.value if mirroring else MirrorState.OFF_CHAIN.value
                    ),
                )
            )
            job_id = None
            if mirroring:
                job_id = self.mirror.enqueue(
                    session,
                    MirrorKind.BET,
                    bet_id,
                    user_id=uid,
                    payload={"market_id": market_id},
                )
            return repo.balance_of(uid), job_id

        balance, job_id = run_in_transaction(body, session_factory=self._scope)
        logger.info("User {} staked {} on {} in market {}", uid, stake, position, market_id)
        self._mirror_inline(job_id)

        with self._scope() as session:
            bet = LedgerRepository(session).get_bet(bet_id)
            state = bet.chain_mirror_state
        return BetReceipt(
            bet_id=bet_id,
            market_id=market_id,
            position=position,
            amount=stake,
            balance=Decimal(balance),
            chain_mirror_state=state,
        )

    # ------------------------------------------------------------------
    # Settlement

    def resolve_market(
        self, caller: Caller | None, market_id: str, *, outcome: Any
    ) -> ResolutionSummary:
        self.require_admin(caller)
        resolution = parse_outcome(outcome)
        fee_rate = self.constants.fee_rate
        mirroring = self.settings.prediction_mirroring_enabled

        def body(session: Session) -> tuple[ResolutionSummary, str | None, list[str]]:
            repo = LedgerRepository(session)
            market = repo.get_market(market_id, for_update=True)
            if market is None:
                raise NotFound("Market not found.")
            if market.status not in _SETTLEABLE:
                raise FailedPrecondition(f"Market is already {market.status}.")

            yes_pool = Decimal(market.total_yes_amount)
            no_pool = Decimal(market.total_no_amount)
            total_pool = yes_pool + no_pool
            winning_pool = yes_pool if resolution == Outcome.YES.value else no_pool

            credits: dict[str, Decimal] = {}
            winners = losers = 0
            for bet in repo.bets_for_market(market_id, for_update=True):
                if bet.status != BetStatus.ACTIVE.value:
                    continue
                if bet.position == resolution and winning_pool > 0:
                    payout = compute_payout(Decimal(bet.amount), winning_pool, total_pool, fee_rate)
                    bet.status = BetStatus.WON.value
                    bet.payout = payout
                    if mirroring:
                        bet.claim_status = MirrorState.PENDING.value
                    credits[bet.user_id] = credits.get(bet.user_id, Decimal("0")) + payout
                    winners += 1
                else:
                    bet.status = BetStatus.LOST.value
                    bet.payout = Decimal("0")
                    losers += 1

            for uid, payout in credits.items():
                repo.credit(uid, payout)

            market.status = MarketStatus.RESOLVED.value
            market.resolution = resolution
            market.resolved_at = self._clock()

            summary = ResolutionSummary(
                market_id=market_id,
                resolution=resolution,
                total_pool=total_pool,
                winning_pool=winning_pool,
                winners=winners,
                losers=losers,
                total_payout=sum(credits.values(), Decimal("0")),
            )
            if not mirroring:
                return summary, None, []

            resolve_job = self.mirror.enqueue(
                session, MirrorKind.MARKET_RESOLVE, market_id, payload={"outcome": resolution}
            )
            claim_jobs = [
                self.mirror.enqueue(
                    session,
                    MirrorKind.CLAIM,
                    claim_entity_id(market_id, uid),
                    user_id=uid,
                    payload={"market_id": market_id},
                )
                for uid in credits
            ]
            return summary, resolve_job, claim_jobs

        summary, resolve_job, claim_jobs = run_in_transaction(body, session_factory=self._scope)
        logger.info(
            "Market {} resolved {}: pool={}, winners={}, paid={}",
            market_id,
            resolution,
            summary.total_pool,
            summary.winners,
            summary.total_payout,
        )

        self._mirror_inline(resolve_job)
        batch = self.settings.inline_claim_batch_size
        for job_id in claim_jobs[:batch]:
            self._mirror_inline(job_id)
        summary.claims_attempted = min(len(claim_jobs), batch)
        summary.claims_deferred = max(len(claim_jobs) - batch, 0)
        if summary.claims_deferred:
            logger.info(
                "Deferred {} claims of market {} to reconciliation",
                summary.claims_deferred,
                market_id,
            )
        return summary

    def cancel_market(self, caller: Caller | None, market_id: str) -> CancellationSummary:
        self.require_admin(caller)
        mirroring = self.settings.prediction_mirroring_enabled

        def body(session: Session) -> tuple[CancellationSummary, list[str]]:
            repo = LedgerRepository(session)
            market = repo.get_market(market_id, for_update=True)
            if market is None:
                raise NotFound("Market not found.")
            if market.status not in _SETTLEABLE:
                raise FailedPrecondition(f"Market is already {market.status}.")

            refunds: dict[str, Decimal] = {}
            refunded_bets = 0
            for bet in repo.bets_for_market(market_id, for_update=True):
                if bet.status != BetStatus.ACTIVE.value:
                    continue
                amount = Decimal(bet.amount)
                bet.status = BetStatus.REFUNDED.value
                bet.payout = amount
                if mirroring:
                    bet.claim_status = MirrorState.PENDING.value
                refunds[bet.user_id] = refunds.get(bet.user_id, Decimal("0")) + amount
                refunded_bets += 1

            for uid, amount in refunds.items():
                repo.credit(uid, amount)
            market.status = MarketStatus.CANCELLED.value

            summary = CancellationSummary(
                market_id=market_id,
                refunded_bets=refunded_bets,
                total_refunded=sum(refunds.values(), Decimal("0")),
            )
            if not mirroring:
                return summary, []

            jobs = [self.mirror.enqueue(session, MirrorKind.MARKET_CANCEL, market_id)]
            jobs.extend(
                self.mirror.enqueue(
                    session,
                    MirrorKind.REFUND,
                    claim_entity_id(market_id, uid),
                    user_id=uid,
                    payload={"market_id": market_id},
                )
                for uid in refunds
            )
            return summary, jobs

        summary, jobs = run_in_transaction(body, session_factory=self._scope)
        logger.info(
            "Market {} cancelled: {} bets refunded ({})",
            market_id,
            summary.refunded_bets,
            summary.total_refunded,
        )
        for job_id in jobs:
            self._mirror_inline(job_id)
        return summary

    def claim_winnings(self, caller: Caller | None, market_id: str) -> ClaimSummary:
        """Report the payout already credited at resolution; may trigger the on-chain claim once."""

        uid = self._require_user(caller)
        if not market_id:
            raise InvalidArgument("marketId is required.")

        with self._scope() as session:
            repo = LedgerRepository(session)
            if repo.get_market(market_id) is None:
                raise NotFound("Market not found.")
            payout = sum(
                (
                    Decimal(bet.payout)
                    for bet in repo.user_bets_for_market(market_id, uid)
                    if bet.status == BetStatus.WON.value
                ),
                Decimal("0"),
            )
            job = MirrorJobRepository(session).find(
                MirrorKind.CLAIM, claim_entity_id(market_id, uid)
            )
            job_id = job.job_id if job is not None else None
            claim_state = job.state if job is not None else None
            # Only a claim never tried on chain is triggered here; the sweep owns retries.
            untried = job is not None and job.last_retry_at is None

        if untried and claim_state == MirrorState.PENDING.value:
            outcome = self._mirror_inline(job_id)
            if outcome is not None:
                claim_state = outcome.state

        return ClaimSummary(market_id=market_id, payout=payout, claim_status=claim_state)

    # ------------------------------------------------------------------
    # Internals

    def _add_market(
        self,
        session: Session,
        market_id: str,
        *,
        title: str,
        description: str,
        category: str,
        deadline: datetime,
        created_by: str,
        image_url: str | None = None,
        group_id: str | None = None,
        group_title: str | None = None,
    ) -> str | None:
        mirroring = self.settings.prediction_mirroring_enabled
        LedgerRepository(session).add_market(
            Market(
                market_id=market_id,
                title=title,
                description=description,
                category=category,
                image_url=image_url,
                group_id=group_id,
                group_title=group_title,
                status=MarketStatus.OPEN.value,
                total_yes_amount=Decimal("0"),
                total_no_amount=Decimal("0"),
                total_volume=Decimal("0"),
                deadline=deadline,
                created_by=created_by,
                chain_mirror_state=(
                    MirrorState.PENDING.value if mirroring else MirrorState.OFF_CHAIN.value
                ),
            )
        )
        if not mirroring:
            return None
        return self.mirror.enqueue(session, MirrorKind.MARKET_CREATE, market_id)

    def _market_receipts(self, market_ids: Sequence[str]) -> list[MarketReceipt]:
        with self._scope() as session:
            repo = LedgerRepository(session)
            receipts = []
            for market_id in market_ids:
                market = repo.get_market(market_id)
                receipts.append(
                    MarketReceipt(
                        market_id=market_id,
                        chain_mirror_state=market.chain_mirror_state,
                        on_chain_id=market.on_chain_id,
                    )
                )
            return receipts

    def _mirror_inline(self, job_id: str | None):
        if not job_id:
            return None
        try:
            return self.mirror.attempt(job_id, consume_retry=False)
        except Exception:
            logger.exception("Inline mirror attempt for job {} failed; left for reconciliation", job_id)
            return None

    def _require_user(self, caller: Caller | None) -> str:
        if caller is None or not caller.uid:
            raise Unauthenticated("You must be signed in.")
        return caller.uid

    def require_admin(self, caller: Caller | None) -> str:
        uid = self._require_user(caller)
        email = (caller.email or "").lower()
        if not caller.is_admin and email not in self.settings.admin_emails:
            raise PermissionDenied("Admin access required.")
        return uid


def _account_snapshot(account: UserAccount) -> AccountSnapshot:
    return AccountSnapshot(
        uid=account.uid,
        balance=Decimal(account.balance),
        wallet_address=account.wallet_address,
        total_distance_km=float(account.total_distance_km or 0.0),
        total_runs=int(account.total_runs or 0),
    )


__all__ = ["LedgerService", "compute_payout", "parse_amount", "parse_outcome"]
