"""Blocking scheduler for the reconciliation sweep and the balance sync."""

from __future__ import annotations

import argparse
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import init_db

from .balance_sync_run import BalanceSyncPipeline
from .reconciliation_run import ReconciliationPipeline


@dataclass(slots=True)
class ScheduledJob:
    name: str
    interval_seconds: float
    action: Callable[[], object]
    next_run: float = 0.0


def build_jobs(settings: Settings) -> list[ScheduledJob]:
    reconciliation = ReconciliationPipeline(settings)
    balance_sync = BalanceSyncPipeline(settings)
    return [
        ScheduledJob(
            name="reconciliation",
            interval_seconds=settings.reconciliation_interval_minutes * 60,
            action=reconciliation.run,
        ),
        ScheduledJob(
            name="balance_sync",
            interval_seconds=settings.balance_sync_interval_minutes * 60,
            action=balance_sync.run,
        ),
    ]


def run_due(jobs: list[ScheduledJob], now: float) -> list[str]:
    """Run every job whose interval has elapsed; one job failing does not stop the others."""

    ran: list[str] = []
    for job in jobs:
        if now < job.next_run:
            continue
        try:
            job.action()
        except Exception:
            logger.exception("Scheduled job {} failed", job.name)
        job.next_run = now + job.interval_seconds
        ran.append(job.name)
    return ran


def run_forever(
    jobs: list[ScheduledJob],
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    logger.info("Scheduler started with jobs: {}", [job.name for job in jobs])
    while True:
        run_due(jobs, clock())
        wait = max(min(job.next_run for job in jobs) - clock(), 1.0)
        sleep(wait)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the reconciliation sweep and balance sync on their configured intervals",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run each job a single time and exit",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = get_settings()
    init_db()
    jobs = build_jobs(settings)
    if args.once:
        run_due(jobs, time.monotonic())
        return
    run_forever(jobs)


if __name__ == "__main__":
    main()
