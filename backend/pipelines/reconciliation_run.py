"""Standalone sweep that retries pending chain mirrors with exponential backoff."""

from __future__ import annotations

import argparse
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, init_db, session_scope
from app.domain import as_utc
from app.models import MirrorKind, MirrorState, utcnow
from app.repositories import MirrorJobRepository
from app.services.mirror_service import MirrorService

# Rewards first, then markets ahead of the bets placed on them so both land in one sweep.
SWEEP_ORDER: tuple[MirrorKind, ...] = (
    MirrorKind.RUN_REWARD,
    MirrorKind.MARKET_CREATE,
    MirrorKind.BET,
    MirrorKind.MARKET_RESOLVE,
    MirrorKind.MARKET_CANCEL,
    MirrorKind.WELCOME_BONUS,
    MirrorKind.CLAIM,
    MirrorKind.REFUND,
)


def retry_delay_seconds(retry_count: int, *, base: float, cap: float) -> float:
    return min((2**retry_count) * base, cap)


def should_retry_now(
    retry_count: int,
    last_retry_at: datetime | None,
    now: datetime,
    *,
    base: float,
    cap: float,
) -> bool:
    if last_retry_at is None:
        return True
    delay = retry_delay_seconds(retry_count, base=base, cap=cap)
    return now >= as_utc(last_retry_at) + timedelta(seconds=delay)


@dataclass(slots=True)
class CategorySummary:
    examined: int = 0
    attempted: int = 0
    confirmed: int = 0
    failed: int = 0
    abandoned: int = 0
    deferred: int = 0
    backing_off: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "examined": self.examined,
            "attempted": self.attempted,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "deferred": self.deferred,
            "backing_off": self.backing_off,
        }


@dataclass(slots=True)
class ReconciliationSummary:
    started_at: datetime | None = None
    finished_at: datetime | None = None
    categories: dict[str, CategorySummary] = field(default_factory=dict)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def category(self, kind: MirrorKind) -> CategorySummary:
        return self.categories.setdefault(kind.value, CategorySummary())

    @property
    def confirmed(self) -> int:
        return sum(item.confirmed for item in self.categories.values())

    @property
    def abandoned(self) -> int:
        return sum(item.abandoned for item in self.categories.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "categories": {kind: item.to_dict() for kind, item in self.categories.items()},
            "failures": self.failures,
        }


class ReconciliationPipeline:
    """Re-run the inline mirror logic for every job still pending."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        mirror: MirrorService | None = None,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._scope = session_factory or session_scope
        self._clock = clock
        self._mirror = mirror or MirrorService(
            session_factory=self._scope, settings=self.settings, clock=clock
        )

    def run(
        self,
        *,
        kinds: Sequence[MirrorKind | str] | None = None,
        limit: int | None = None,
    ) -> ReconciliationSummary:
        selected = [MirrorKind(kind) for kind in kinds] if kinds else list(SWEEP_ORDER)
        limit = limit or self.settings.reconciliation_batch_limit
        summary = ReconciliationSummary(started_at=self._clock())
        logger.info(
            "Starting reconciliation sweep: categories={}, limit={}",
            [kind.value for kind in selected],
            limit,
        )
        for kind in selected:
            self._sweep_category(kind, limit, summary)

        summary.finished_at = self._clock()
        logger.info(
            "Reconciliation sweep finished: confirmed={}, abandoned={}, failures={}",
            summary.confirmed,
            summary.abandoned,
            len(summary.failures),
        )
        return summary

    def _sweep_category(
        self, kind: MirrorKind, limit: int, summary: ReconciliationSummary
    ) -> None:
        stats = summary.category(kind)
        with self._scope() as session:
            candidates = [
                (job.job_id, job.entity_id, job.retry_count, job.last_retry_at)
                for job in MirrorJobRepository(session).pending(kind, limit=limit)
            ]
        if not candidates:
            return

        logger.info("Reconciling {} pending {} mirrors", len(candidates), kind.value)
        # Sequential within a category: treasury-signed kinds share one nonce.
        for job_id, entity_id, retry_count, last_retry_at in candidates:
            stats.examined += 1
            if not should_retry_now(
                retry_count,
                last_retry_at,
                self._clock(),
                base=self.settings.reconciliation_base_delay_seconds,
                cap=self.settings.reconciliation_cap_delay_seconds,
            ):
                stats.backing_off += 1
                continue

            try:
                outcome = self._mirror.attempt(job_id, consume_retry=True)
            except Exception as exc:
                logger.exception("Reconciliation of {} {} crashed", kind.value, entity_id)
                summary.failures.append(
                    {"kind": kind.value, "entity_id": entity_id, "reason": str(exc)}
                )
                continue

            if not outcome.attempted and outcome.state == MirrorState.PENDING.value:
                stats.deferred += 1
                continue
            stats.attempted += 1
            if outcome.state == MirrorState.CONFIRMED.value:
                stats.confirmed += 1
            elif outcome.state == MirrorState.ABANDONED.value:
                stats.abandoned += 1
                summary.failures.append(
                    {"kind": kind.value, "entity_id": entity_id, "reason": outcome.error}
                )
            else:
                stats.failed += 1


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Retry pending on-chain mirrors of committed ledger transitions",
    )
    parser.add_argument(
        "--kind",
        dest="kinds",
        action="append",
        choices=[kind.value for kind in MirrorKind],
        help="Restrict the sweep to specific mirror kinds (can be provided multiple times)",
    )
    parser.add_argument(
        "--limit", type=int, default=None, help="Maximum number of candidates per category"
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ReconciliationSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Reconciliation summary written to {}", path)


def main() -> ReconciliationSummary:
    args = _parse_args()
    settings = get_settings()
    init_db()
    pipeline = ReconciliationPipeline(settings)
    summary = pipeline.run(kinds=args.kinds, limit=args.limit)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
