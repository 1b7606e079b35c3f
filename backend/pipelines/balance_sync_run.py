"""Re-poll on-chain token balances and correct drift in the cached ledger balance."""

from __future__ import annotations

import argparse
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, init_db, session_scope
from app.models import utcnow
from app.repositories import LedgerRepository, MirrorJobRepository
from chain.client import ChainClient


@dataclass(slots=True)
class BalanceSyncSummary:
    checked: int = 0
    synced: int = 0
    skipped_pending: int = 0
    failed: int = 0
    disabled: bool = False
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "synced": self.synced,
            "skipped_pending": self.skipped_pending,
            "failed": self.failed,
            "disabled": self.disabled,
            "failures": self.failures,
        }


class BalanceSyncPipeline:
    """Overwrite cached balances with chain balances for users with nothing in flight."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        chain: ChainClient | None = None,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._chain = chain
        self._scope = session_factory or session_scope
        self._clock = clock

    @property
    def chain(self) -> ChainClient:
        if self._chain is None:
            self._chain = ChainClient(self.settings)
        return self._chain

    def run(self, *, batch_size: int | None = None) -> BalanceSyncSummary:
        summary = BalanceSyncSummary()
        if not self.settings.prediction_mirroring_enabled:
            # Bets stay off-chain in this mode, so the chain balance is not authoritative.
            logger.warning("Prediction contract not configured; skipping balance sync")
            summary.disabled = True
            return summary

        batch_size = batch_size or self.settings.balance_sync_batch_size
        logger.info("Starting balance sync: batch_size={}", batch_size)
        after_uid: str | None = None
        while True:
            with self._scope() as session:
                page = LedgerRepository(session).wallet_accounts_page(
                    after_uid=after_uid, limit=batch_size
                )
                pending = MirrorJobRepository(session).users_with_pending(uid for uid, _ in page)
            if not page:
                break

            for uid, address in page:
                summary.checked += 1
                if uid in pending:
                    summary.skipped_pending += 1
                    continue
                self._sync_user(uid, address, summary)

            after_uid = page[-1][0]
            if len(page) < batch_size:
                break

        logger.info(
            "Balance sync finished: checked={}, synced={}, skipped_pending={}, failed={}",
            summary.checked,
            summary.synced,
            summary.skipped_pending,
            summary.failed,
        )
        return summary

    def _sync_user(self, uid: str, address: str, summary: BalanceSyncSummary) -> None:
        try:
            balance = self.chain.token_balance(address)
        except Exception as exc:
            logger.warning("Balance read for user {} failed: {}", uid, exc)
            summary.failed += 1
            summary.failures.append({"uid": uid, "reason": str(exc)})
            with self._scope() as session:
                LedgerRepository(session).record_sync_error(uid, str(exc)[:500])
            return

        with self._scope() as session:
            # A transition may have enqueued a mirror since the page was read.
            if MirrorJobRepository(session).has_pending_for_user(uid):
                summary.skipped_pending += 1
                return
            LedgerRepository(session).overwrite_synced_balance(
                uid, balance, synced_at=self._clock()
            )
        summary.synced += 1


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Refresh cached ledger balances from on-chain token balances",
    )
    parser.add_argument(
        "--batch-size", type=int, default=None, help="Number of wallets loaded per page"
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: BalanceSyncSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Balance sync summary written to {}", path)


def main() -> BalanceSyncSummary:
    args = _parse_args()
    settings = get_settings()
    init_db()
    summary = BalanceSyncPipeline(settings).run(batch_size=args.batch_size)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
