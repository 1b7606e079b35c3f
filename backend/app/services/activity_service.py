"""Activity submission: validate a run, record it, and credit the reward."""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from loguru import logger
from sqlalchemy.orm import Session

from app.core.constants import ACTIVITY_LIMITS, AMOUNT_QUANTUM, LEDGER, ActivityLimits, LedgerConstants
from app.db import SessionFactory, run_in_transaction, session_scope
from app.domain import ActivityResult, ActivitySubmission, Caller
from app.errors import InvalidArgument, NotFound, ResourceExhausted, Unauthenticated
from app.models import ActivityRecord, ActivityStatus, MirrorKind, MirrorState, utcnow
from app.repositories import ActivityRepository, LedgerRepository

from .activity_validation import validate_activity
from .mirror_service import MirrorService


def reward_for(distance_km: float, constants: LedgerConstants = LEDGER) -> Decimal:
    amount = Decimal(str(distance_km)) * constants.reward_per_km
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def pace_min_per_km(distance_km: float, duration_seconds: float) -> float:
    if distance_km <= 0:
        return 0.0
    return round((duration_seconds / 60) / distance_km, 2)


class ActivityService:
    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        mirror: MirrorService | None = None,
        constants: LedgerConstants = LEDGER,
        limits: ActivityLimits = ACTIVITY_LIMITS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scope = session_factory or session_scope
        self._mirror = mirror
        self.constants = constants
        self.limits = limits
        self._clock = clock

    @property
    def mirror(self) -> MirrorService:
        if self._mirror is None:
            self._mirror = MirrorService(session_factory=self._scope)
        return self._mirror

    def submit_activity(self, caller: Caller | None, submission: ActivitySubmission) -> ActivityResult:
        if caller is None or not caller.uid:
            raise Unauthenticated("You must be signed in to submit a run.")
        uid = caller.uid
        for label, value in (("distance", submission.distance_km), ("duration", submission.duration_seconds)):
            if value is None or not math.isfinite(value) or value < 0:
                raise InvalidArgument(f"{label} must be a non-negative number.")

        validation = validate_activity(submission, self.limits)
        tk_earned = reward_for(submission.distance_km, self.constants) if validation.valid else Decimal("0")
        status = ActivityStatus.VALIDATED.value if validation.valid else ActivityStatus.REJECTED.value
        activity_id = uuid.uuid4().hex
        now = self._clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        def body(session: Session) -> tuple[ActivityResult, str | None]:
            activities = ActivityRepository(session)
            if submission.submission_id:
                previous = activities.find_submission(uid, submission.submission_id)
                if previous is not None:
                    return _result_from_record(previous, duplicate=True), None

            if activities.count_since(uid, day_start) >= self.constants.max_runs_per_day:
                raise ResourceExhausted(
                    f"Maximum {self.constants.max_runs_per_day} runs per day reached."
                )
            ledger = LedgerRepository(session)
            if ledger.get_account(uid, for_update=True) is None:
                raise NotFound("User profile not found.")

            rewarded = tk_earned > 0
            record = activities.add(
                ActivityRecord(
                    activity_id=activity_id,
                    user_id=uid,
                    submission_id=submission.submission_id,
                    distance_km=submission.distance_km,
                    duration_seconds=submission.duration_seconds,
                    pace_min_per_km=pace_min_per_km(
                        submission.distance_km, submission.duration_seconds
                    ),
                    started_at=submission.started_at,
                    ended_at=submission.ended_at,
                    points=[point.to_dict() for point in submission.points],
                    status=status,
                    tk_earned=tk_earned,
                    validation_errors=list(validation.errors),
                    chain_mirror_state=(
                        MirrorState.PENDING.value if rewarded else MirrorState.OFF_CHAIN.value
                    ),
                    created_at=now,
                )
            )
            job_id = None
            if validation.valid:
                ledger.record_activity_totals(uid, submission.distance_km)
            if rewarded:
                ledger.credit(uid, tk_earned)
                job_id = self.mirror.enqueue(
                    session, MirrorKind.RUN_REWARD, activity_id, user_id=uid
                )
            return _result_from_record(record), job_id

        result, job_id = run_in_transaction(body, session_factory=self._scope)
        if result.duplicate:
            logger.info("Activity submission {} from {} already recorded", submission.submission_id, uid)
            return result

        if result.validated:
            logger.info("Activity {} from {} validated; credited {}", activity_id, uid, tk_earned)
        else:
            logger.info("Activity {} from {} rejected: {}", activity_id, uid, "; ".join(result.errors))

        if job_id:
            try:
                self.mirror.attempt(job_id, consume_retry=False)
            except Exception:
                logger.exception("Inline reward mirror for activity {} failed", activity_id)
        return result


def _result_from_record(record: ActivityRecord, *, duplicate: bool = False) -> ActivityResult:
    return ActivityResult(
        activity_id=record.activity_id,
        validated=record.status == ActivityStatus.VALIDATED.value,
        tk_earned=Decimal(record.tk_earned),
        errors=list(record.validation_errors or []),
        duplicate=duplicate,
    )


__all__ = ["ActivityService", "pace_min_per_km", "reward_for"]
