from decimal import Decimal

import pytest

from app.domain import ActivitySubmission, Caller, GpsPoint
from app.errors import InvalidArgument, NotFound, ResourceExhausted, Unauthenticated
from app.models import MirrorKind, MirrorState
from app.repositories import ActivityRepository, MirrorJobRepository
from app.services.activity_service import pace_min_per_km, reward_for

METRES_PER_DEGREE = 6_371_000.0 * 3.141592653589793 / 180


def _run(distance_km=5.0, duration_s=1500.0, submission_id=None):
    steps = int(duration_s // 10)
    step_deg = distance_km * 1000 / steps / METRES_PER_DEGREE
    points = [
        GpsPoint(lat=51.5 + index * step_deg, lng=-0.12, timestamp=1_700_000_000_000 + index * 10_000)
        for index in range(steps + 1)
    ]
    return ActivitySubmission(
        distance_km=distance_km,
        duration_seconds=duration_s,
        points=points,
        submission_id=submission_id,
    )


def test_reward_and_pace_helpers():
    assert reward_for(5.0) == Decimal("50")
    assert reward_for(2.35) == Decimal("23.5")
    assert pace_min_per_km(5.0, 1500) == 5.0
    assert pace_min_per_km(0, 1500) == 0.0


def test_valid_run_credits_reward(activities, ledger, fake_chain, session_factory):
    ledger.ensure_account("alice")

    result = activities.submit_activity(Caller(uid="alice"), _run())

    assert result.validated is True
    assert result.tk_earned == Decimal("50")
    assert result.errors == []
    snapshot = ledger.get_balance("alice")
    assert snapshot.balance == Decimal("55")
    assert snapshot.total_runs == 1
    assert snapshot.total_distance_km == pytest.approx(5.0)
    with session_factory() as session:
        record = ActivityRepository(session).get(result.activity_id)
        assert record.chain_mirror_state == MirrorState.CONFIRMED.value
        assert record.pace_min_per_km == 5.0
    # Welcome bonus plus the run reward.
    assert fake_chain.count("transfer_tokens") == 2


def test_rejected_run_is_stored_without_credit(activities, ledger, session_factory):
    ledger.ensure_account("alice")

    result = activities.submit_activity(
        Caller(uid="alice"), ActivitySubmission(distance_km=5.0, duration_seconds=1500, points=[])
    )

    assert result.validated is False
    assert result.tk_earned == Decimal("0")
    assert "No GPS points provided" in result.errors
    assert ledger.get_balance("alice").balance == Decimal("5")
    assert ledger.get_balance("alice").total_runs == 0
    with session_factory() as session:
        assert MirrorJobRepository(session).find(MirrorKind.RUN_REWARD, result.activity_id) is None


def test_duplicate_submission_returns_stored_result(activities, ledger):
    ledger.ensure_account("alice")
    caller = Caller(uid="alice")

    first = activities.submit_activity(caller, _run(submission_id="watch-42"))
    replay = activities.submit_activity(caller, _run(submission_id="watch-42"))

    assert replay.duplicate is True
    assert replay.activity_id == first.activity_id
    assert replay.tk_earned == first.tk_earned
    assert ledger.get_balance("alice").balance == Decimal("55")


def test_daily_cap_counts_rejected_runs(activities, ledger):
    """Rejected submissions count toward the daily limit too."""

    ledger.ensure_account("alice")
    caller = Caller(uid="alice")
    empty = ActivitySubmission(distance_km=1.0, duration_seconds=600, points=[])
    for _ in range(10):
        activities.submit_activity(caller, empty)

    with pytest.raises(ResourceExhausted):
        activities.submit_activity(caller, _run())
    assert ledger.get_balance("alice").balance == Decimal("5")


def test_submission_requires_account_and_identity(activities):
    with pytest.raises(Unauthenticated):
        activities.submit_activity(None, _run())
    with pytest.raises(NotFound):
        activities.submit_activity(Caller(uid="ghost"), _run())
    with pytest.raises(InvalidArgument):
        activities.submit_activity(
            Caller(uid="ghost"), ActivitySubmission(distance_km=-1, duration_seconds=10)
        )
