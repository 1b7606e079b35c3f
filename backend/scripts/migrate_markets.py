"""Create on chain every open market that is not mirrored yet."""

import argparse
import json
from datetime import datetime

from loguru import logger

from app.core.config import get_settings
from app.db import SessionFactory, init_db, session_scope
from app.domain import as_utc
from app.models import MirrorKind, MirrorState, utcnow
from app.repositories import LedgerRepository, MirrorJobRepository
from app.services.mirror_service import MirrorService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mirror off-chain markets onto the prediction contract")
    parser.add_argument("--limit", type=int, default=None, help="Migrate up to N markets")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report which markets would be migrated",
    )
    return parser.parse_args()


def migrate_markets(
    *,
    mirror: MirrorService,
    session_factory: SessionFactory = session_scope,
    limit: int | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> dict[str, list[str]]:
    now = now or utcnow()
    report: dict[str, list[str]] = {"migrated": [], "failed": [], "skipped": [], "planned": []}

    job_ids: list[tuple[str, str]] = []
    with session_factory() as session:
        jobs = MirrorJobRepository(session)
        for market in LedgerRepository(session).markets_pending_creation(limit=limit):
            if as_utc(market.deadline) <= now:
                logger.warning(
                    "Skipping past-deadline market {} (deadline {})", market.market_id, market.deadline
                )
                report["skipped"].append(market.market_id)
                continue
            if dry_run:
                report["planned"].append(market.market_id)
                continue

            job = jobs.enqueue(MirrorKind.MARKET_CREATE, market.market_id)
            if job.state == MirrorState.ABANDONED.value:
                logger.info("Re-opening abandoned creation mirror for market {}", market.market_id)
                job.state = MirrorState.PENDING.value
                job.retry_count = 0
            market.chain_mirror_state = MirrorState.PENDING.value
            job_ids.append((market.market_id, job.job_id))

    for market_id, job_id in job_ids:
        outcome = mirror.attempt(job_id, consume_retry=False)
        if outcome.state == MirrorState.CONFIRMED.value:
            report["migrated"].append(market_id)
        else:
            report["failed"].append(market_id)

    logger.info(
        "Market migration finished: migrated={}, failed={}, skipped={}, planned={}",
        len(report["migrated"]),
        len(report["failed"]),
        len(report["skipped"]),
        len(report["planned"]),
    )
    return report


def main() -> None:
    args = parse_args()
    settings = get_settings()
    if not settings.prediction_mirroring_enabled:
        logger.error("PREDICTION_CONTRACT_ADDRESS is not configured; nothing to migrate to")
        raise SystemExit(1)
    init_db()
    report = migrate_markets(mirror=MirrorService(settings=settings), limit=args.limit, dry_run=args.dry_run)
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
