from datetime import timedelta
from decimal import Decimal

import pytest

from app.domain import Caller, GroupOutcome
from app.errors import (
    FailedPrecondition,
    InsufficientBalance,
    InvalidArgument,
    MarketNotOpen,
    NotFound,
    PermissionDenied,
    Unauthenticated,
)
from app.models import BetStatus, MirrorKind, MirrorState, utcnow
from app.repositories import LedgerRepository, MirrorJobRepository
from app.services.ledger_service import compute_payout, parse_amount
from chain.client import ChainError

ADMIN = Caller(uid="admin-1", is_admin=True)


def _open_market(ledger, title="Will the marathon record fall?"):
    receipt = ledger.create_market(
        ADMIN,
        title=title,
        description="Resolves yes if the record falls this season.",
        category="running",
        deadline=utcnow() + timedelta(days=7),
    )
    return receipt.market_id


def _market_totals(session_factory, market_id):
    with session_factory() as session:
        market = LedgerRepository(session).get_market(market_id)
        return (
            Decimal(market.total_yes_amount),
            Decimal(market.total_no_amount),
            Decimal(market.total_volume),
        )


def _balance(ledger, uid):
    return ledger.get_balance(uid).balance


def test_compute_payout_truncates_to_token_precision():
    payout = compute_payout(Decimal("1"), Decimal("3"), Decimal("10"), Decimal("0.02"))

    assert payout == Decimal("3.266666666666666666")
    assert compute_payout(Decimal("5"), Decimal("0"), Decimal("10"), Decimal("0.02")) == 0


@pytest.mark.parametrize("raw", ["0", "-5", "abc", "NaN", "Infinity"])
def test_parse_amount_rejects_non_positive_values(raw):
    with pytest.raises(InvalidArgument):
        parse_amount(raw)


def test_ensure_account_grants_welcome_bonus_once(ledger, fake_chain):
    """A new account opens with the bonus and gets a wallet; repeat calls are no-ops."""

    first = ledger.ensure_account("alice", email="alice@example.com")
    second = ledger.ensure_account("alice", email="alice@example.com")

    assert first.created is True
    assert second.created is False
    assert first.balance == Decimal("5")
    assert second.balance == Decimal("5")
    assert first.wallet_address is not None
    assert first.wallet_address == second.wallet_address
    assert fake_chain.count("transfer_tokens") == 1


def test_create_market_is_mirrored_inline(ledger, fake_chain, session_factory):
    receipt = ledger.create_market(
        ADMIN,
        title="Sub-2 marathon?",
        description="Resolves yes on a ratified sub-2 time.",
        category="running",
        deadline=utcnow() + timedelta(days=30),
    )

    assert receipt.chain_mirror_state == MirrorState.CONFIRMED.value
    assert receipt.on_chain_id == 1
    assert fake_chain.count("create_market") == 1
    # Treasury transactions start from the chain's pending nonce.
    assert fake_chain.calls[0][1]["nonce"] == 7
    assert _market_totals(session_factory, receipt.market_id) == (0, 0, 0)


def test_create_market_rejects_past_deadline(ledger):
    with pytest.raises(InvalidArgument):
        ledger.create_market(
            ADMIN,
            title="Too late",
            description="Already over.",
            category="running",
            deadline=utcnow() - timedelta(minutes=1),
        )


def test_admin_by_email_may_create_markets(ledger):
    caller = Caller(uid="ops-1", email="OPS@example.com")

    receipt = ledger.create_market(
        caller,
        title="Email admin market",
        description="Created by an allow-listed operator.",
        category="running",
        deadline=utcnow() + timedelta(days=1),
    )

    assert receipt.market_id


def test_non_admin_cannot_manage_markets(ledger, make_user):
    """Market creation and settlement require an administrator."""

    market_id = _open_market(ledger)
    caller = Caller(uid=make_user("alice"))

    with pytest.raises(PermissionDenied):
        _open_market_as(ledger, caller)
    with pytest.raises(PermissionDenied):
        ledger.resolve_market(caller, market_id, outcome="yes")
    with pytest.raises(PermissionDenied):
        ledger.cancel_market(caller, market_id)
    with pytest.raises(Unauthenticated):
        ledger.place_bet(None, market_id, side="yes", amount="1")


def _open_market_as(ledger, caller):
    return ledger.create_market(
        caller,
        title="Not allowed",
        description="Should be rejected.",
        category="running",
        deadline=utcnow() + timedelta(days=1),
    )


def test_place_bet_moves_stake_into_pool(ledger, make_user, fake_chain, session_factory):
    """Every accepted stake leaves the balance and lands in exactly one side of the pool."""

    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    bob = Caller(uid=make_user("bob", "100"))

    receipt = ledger.place_bet(alice, market_id, side="yes", amount="30")
    ledger.place_bet(bob, market_id, side="NO", amount="20")

    assert receipt.balance == Decimal("70")
    assert receipt.position == "yes"
    assert receipt.chain_mirror_state == MirrorState.CONFIRMED.value
    assert _balance(ledger, "bob") == Decimal("80")

    yes_total, no_total, volume = _market_totals(session_factory, market_id)
    assert yes_total == Decimal("30")
    assert no_total == Decimal("20")
    assert volume == yes_total + no_total

    place_calls = [kwargs for name, kwargs in fake_chain.calls if name == "place_bet"]
    assert [(call["on_chain_id"], call["is_yes"]) for call in place_calls] == [(1, True), (1, False)]
    assert fake_chain.count("approve_tokens") == 2


def test_insufficient_balance_leaves_ledger_untouched(ledger, make_user, session_factory):
    market_id = _open_market(ledger)
    carol = Caller(uid=make_user("carol", "10"))

    with pytest.raises(InsufficientBalance):
        ledger.place_bet(carol, market_id, side="yes", amount="25")

    assert _balance(ledger, "carol") == Decimal("10")
    assert _market_totals(session_factory, market_id) == (0, 0, 0)
    with session_factory() as session:
        assert LedgerRepository(session).user_bets_for_market(market_id, "carol") == []
        assert MirrorJobRepository(session).pending(MirrorKind.BET) == []


def test_bet_on_closed_market_is_rejected(ledger, make_user):
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "50"))

    assert ledger.close_market(ADMIN, market_id) == "closed"
    with pytest.raises(MarketNotOpen):
        ledger.place_bet(alice, market_id, side="yes", amount="5")
    with pytest.raises(FailedPrecondition):
        ledger.close_market(ADMIN, market_id)


def test_bet_on_unknown_market_is_not_found(ledger, make_user):
    alice = Caller(uid=make_user("alice", "50"))

    with pytest.raises(NotFound):
        ledger.place_bet(alice, "missing", side="yes", amount="5")
    with pytest.raises(InvalidArgument):
        ledger.place_bet(alice, "missing", side="maybe", amount="5")


def test_resolve_pays_winners_pro_rata_net_of_fee(ledger, make_user, fake_chain, session_factory):
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    bob = Caller(uid=make_user("bob", "100"))
    carol = Caller(uid=make_user("carol", "100"))
    ledger.place_bet(alice, market_id, side="yes", amount="10")
    ledger.place_bet(bob, market_id, side="yes", amount="30")
    ledger.place_bet(carol, market_id, side="no", amount="60")

    summary = ledger.resolve_market(ADMIN, market_id, outcome="yes")

    assert summary.total_pool == Decimal("100")
    assert summary.winning_pool == Decimal("40")
    assert (summary.winners, summary.losers) == (2, 1)
    assert summary.total_payout == Decimal("98")
    assert summary.claims_attempted == 2
    assert summary.claims_deferred == 0

    assert _balance(ledger, "alice") == Decimal("114.5")
    assert _balance(ledger, "bob") == Decimal("143.5")
    assert _balance(ledger, "carol") == Decimal("40")

    assert fake_chain.count("resolve_market") == 1
    assert fake_chain.count("claim_winnings") == 2
    with session_factory() as session:
        bets = LedgerRepository(session).bets_for_market(market_id)
        assert {bet.user_id: bet.status for bet in bets} == {
            "alice": BetStatus.WON.value,
            "bob": BetStatus.WON.value,
            "carol": BetStatus.LOST.value,
        }
        assert {bet.user_id: bet.claim_status for bet in bets}["alice"] == MirrorState.CONFIRMED.value


def test_resolve_with_empty_winning_pool_credits_nobody(ledger, make_user, fake_chain):
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    bob = Caller(uid=make_user("bob", "100"))
    ledger.place_bet(alice, market_id, side="no", amount="10")
    ledger.place_bet(bob, market_id, side="no", amount="20")

    summary = ledger.resolve_market(ADMIN, market_id, outcome="yes")

    assert summary.winners == 0
    assert summary.losers == 2
    assert summary.total_payout == Decimal("0")
    assert summary.claims_attempted == 0
    assert _balance(ledger, "alice") == Decimal("90")
    assert _balance(ledger, "bob") == Decimal("80")
    assert fake_chain.count("claim_winnings") == 0


def test_resolve_twice_is_rejected(ledger):
    market_id = _open_market(ledger)
    ledger.resolve_market(ADMIN, market_id, outcome="no")

    with pytest.raises(FailedPrecondition):
        ledger.resolve_market(ADMIN, market_id, outcome="yes")
    with pytest.raises(FailedPrecondition):
        ledger.cancel_market(ADMIN, market_id)


def test_cancel_refunds_exact_stakes(ledger, make_user, fake_chain, session_factory):
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    bob = Caller(uid=make_user("bob", "100"))
    ledger.place_bet(alice, market_id, side="yes", amount="10")
    ledger.place_bet(alice, market_id, side="no", amount="5")
    ledger.place_bet(bob, market_id, side="no", amount="15")

    summary = ledger.cancel_market(ADMIN, market_id)

    assert summary.refunded_bets == 3
    assert summary.total_refunded == Decimal("30")
    assert _balance(ledger, "alice") == Decimal("100")
    assert _balance(ledger, "bob") == Decimal("100")
    with session_factory() as session:
        for bet in LedgerRepository(session).bets_for_market(market_id):
            assert bet.status == BetStatus.REFUNDED.value
            assert Decimal(bet.payout) == Decimal(bet.amount)
    assert fake_chain.count("cancel_market") == 1
    # One refund per user, not per bet.
    assert fake_chain.count("refund") == 2

    with pytest.raises(FailedPrecondition):
        ledger.cancel_market(ADMIN, market_id)
    assert _balance(ledger, "alice") == Decimal("100")


def test_claim_winnings_reports_credited_payout(ledger, make_user):
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    carol = Caller(uid=make_user("carol", "100"))
    ledger.place_bet(alice, market_id, side="yes", amount="10")
    ledger.place_bet(carol, market_id, side="no", amount="40")
    ledger.resolve_market(ADMIN, market_id, outcome="yes")
    balance_after_resolution = _balance(ledger, "alice")

    claim = ledger.claim_winnings(alice, market_id)
    again = ledger.claim_winnings(alice, market_id)
    losing = ledger.claim_winnings(carol, market_id)

    assert claim.payout == Decimal("49")
    assert again.payout == claim.payout
    assert claim.claim_status == MirrorState.CONFIRMED.value
    assert losing.payout == Decimal("0")
    assert losing.claim_status is None
    assert _balance(ledger, "alice") == balance_after_resolution

    with pytest.raises(NotFound):
        ledger.claim_winnings(alice, "missing")


def test_chain_failure_keeps_committed_bet(ledger, make_user, fake_chain, session_factory):
    """A rejected on-chain bet stays pending for reconciliation; the ledger result stands."""

    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    fake_chain.fail["place_bet"] = ChainError("execution reverted")

    receipt = ledger.place_bet(alice, market_id, side="yes", amount="10")

    assert receipt.chain_mirror_state == MirrorState.PENDING.value
    assert _balance(ledger, "alice") == Decimal("90")
    with session_factory() as session:
        job = MirrorJobRepository(session).find(MirrorKind.BET, receipt.bet_id)
        assert job.state == MirrorState.PENDING.value
        assert job.retry_count == 0
        assert "execution reverted" in job.last_error


def test_bet_waits_for_market_creation(ledger, make_user, fake_chain, session_factory):
    fake_chain.fail["create_market"] = ChainError("execution reverted")
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))

    receipt = ledger.place_bet(alice, market_id, side="yes", amount="10")

    assert receipt.chain_mirror_state == MirrorState.PENDING.value
    assert fake_chain.count("approve_tokens") == 0
    with session_factory() as session:
        job = MirrorJobRepository(session).find(MirrorKind.BET, receipt.bet_id)
        assert job.retry_count == 0
        assert "not created on chain yet" in job.last_error


def test_claims_beyond_inline_batch_are_deferred(ledger, make_user, fake_chain, test_settings):
    test_settings.inline_claim_batch_size = 1
    market_id = _open_market(ledger)
    for uid in ("alice", "bob", "carol"):
        ledger.place_bet(Caller(uid=make_user(uid, "50")), market_id, side="yes", amount="10")

    summary = ledger.resolve_market(ADMIN, market_id, outcome="yes")

    assert summary.winners == 3
    assert summary.claims_attempted == 1
    assert summary.claims_deferred == 2
    assert fake_chain.count("claim_winnings") == 1


def test_without_prediction_contract_markets_stay_off_chain(
    ledger, make_user, fake_chain, test_settings, session_factory
):
    test_settings.prediction_contract_address = None
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))

    receipt = ledger.place_bet(alice, market_id, side="yes", amount="10")
    summary = ledger.resolve_market(ADMIN, market_id, outcome="yes")

    assert receipt.chain_mirror_state == MirrorState.OFF_CHAIN.value
    assert summary.total_payout == Decimal("9.8")
    assert fake_chain.count("create_market") == 0
    assert fake_chain.count("place_bet") == 0
    assert fake_chain.count("resolve_market") == 0
    # Welcome bonuses are still transferred.
    assert fake_chain.count("transfer_tokens") == 1
    with session_factory() as session:
        counts = MirrorJobRepository(session).counts_by_kind()
    assert counts[MirrorKind.MARKET_CREATE.value] == {}
    assert counts[MirrorKind.BET.value] == {}


def test_claim_triggers_on_chain_claim_only_once(ledger, make_user, fake_chain, test_settings):
    """Repeated claim calls never add on-chain attempts beyond the first."""

    test_settings.inline_claim_batch_size = 0
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    ledger.place_bet(alice, market_id, side="yes", amount="10")
    ledger.place_bet(Caller(uid=make_user("carol", "100")), market_id, side="no", amount="40")
    ledger.resolve_market(ADMIN, market_id, outcome="yes")
    assert fake_chain.count("claim_winnings") == 0

    fake_chain.fail["claim_winnings"] = ChainError("execution reverted")
    first = ledger.claim_winnings(alice, market_id)
    second = ledger.claim_winnings(alice, market_id)

    assert fake_chain.count("claim_winnings") == 1
    assert first.claim_status == MirrorState.PENDING.value
    assert second.claim_status == MirrorState.PENDING.value
    assert second.payout == Decimal("49")


@pytest.mark.parametrize("settle", ["resolve", "cancel"])
def test_pool_totals_match_per_side_bet_sums(ledger, make_user, session_factory, settle):
    market_id = _open_market(ledger)
    alice = Caller(uid=make_user("alice", "100"))
    bob = Caller(uid=make_user("bob", "100"))
    ledger.place_bet(alice, market_id, side="yes", amount="10")
    ledger.place_bet(bob, market_id, side="no", amount="20")
    ledger.place_bet(alice, market_id, side="no", amount="4")

    def assert_consistent():
        yes_total, no_total, volume = _market_totals(session_factory, market_id)
        with session_factory() as session:
            sides = LedgerRepository(session).side_totals(market_id)
        assert sides == {"yes": yes_total, "no": no_total}
        assert volume == yes_total + no_total

    assert_consistent()
    if settle == "resolve":
        ledger.resolve_market(ADMIN, market_id, outcome="no")
    else:
        ledger.cancel_market(ADMIN, market_id)
    assert_consistent()
    assert _market_totals(session_factory, market_id) == (10, 24, 34)


def _group_outcomes(*titles, days=5):
    return [GroupOutcome(title=title, deadline=utcnow() + timedelta(days=days)) for title in titles]


def test_create_market_group_opens_markets_together(ledger, fake_chain, session_factory):
    receipt = ledger.create_market_group(
        ADMIN,
        group_title="Who wins the city marathon?",
        description="One market per finisher.",
        category="running",
        markets=_group_outcomes("Runner A", "Runner B", "Runner C"),
    )

    assert len(receipt.markets) == 3
    assert [market.on_chain_id for market in receipt.markets] == [1, 2, 3]
    assert {market.chain_mirror_state for market in receipt.markets} == {MirrorState.CONFIRMED.value}
    assert fake_chain.count("create_market") == 3
    with session_factory() as session:
        repo = LedgerRepository(session)
        stored = [repo.get_market(market.market_id) for market in receipt.markets]
        assert {market.group_id for market in stored} == {receipt.group_id}
        assert {market.group_title for market in stored} == {"Who wins the city marathon?"}
        assert [market.title for market in stored] == ["Runner A", "Runner B", "Runner C"]
        assert {market.status for market in stored} == {"open"}
        jobs = MirrorJobRepository(session).counts_by_kind()[MirrorKind.MARKET_CREATE.value]
        assert jobs == {MirrorState.CONFIRMED.value: 3}


def test_market_group_bets_use_each_outcome(ledger, make_user, session_factory):
    receipt = ledger.create_market_group(
        ADMIN,
        group_title="Fastest split",
        description="Which split is fastest?",
        category="running",
        markets=_group_outcomes("First half", "Second half"),
    )
    alice = Caller(uid=make_user("alice", "50"))

    ledger.place_bet(alice, receipt.markets[1].market_id, side="yes", amount="8")

    assert _market_totals(session_factory, receipt.markets[0].market_id) == (0, 0, 0)
    assert _market_totals(session_factory, receipt.markets[1].market_id) == (8, 0, 8)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"markets": _group_outcomes("Only one")}, "At least 2"),
        ({"group_title": ""}, "required"),
        (
            {"markets": [GroupOutcome(title="A", deadline=None), *_group_outcomes("B")]},
            "title and deadline",
        ),
        (
            {"markets": [*_group_outcomes("Future"), *_group_outcomes("Past", days=-1)]},
            'Deadline for "Past"',
        ),
    ],
)
def test_market_group_validation_is_all_or_nothing(ledger, session_factory, kwargs, message):
    arguments = {
        "group_title": "Group",
        "description": "Shared description.",
        "category": "running",
        "markets": _group_outcomes("A", "B"),
        **kwargs,
    }

    with pytest.raises(InvalidArgument, match=message):
        ledger.create_market_group(ADMIN, **arguments)

    with session_factory() as session:
        assert LedgerRepository(session).platform_stats()["total_markets"] == 0


def test_market_group_requires_admin(ledger, make_user):
    with pytest.raises(PermissionDenied):
        ledger.create_market_group(
            Caller(uid=make_user("alice")),
            group_title="Group",
            description="Shared description.",
            category="running",
            markets=_group_outcomes("A", "B"),
        )
