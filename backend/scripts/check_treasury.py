"""Report treasury gas and the mirror backlog."""

import argparse
import json

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from app.services.treasury_service import TreasuryService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check treasury gas balance and pending mirrors")
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the full treasury status report instead of only the gas check",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()
    service = TreasuryService(settings=settings)

    if args.status:
        status = service.status()
        print(
            json.dumps(
                {
                    "treasury_address": status.treasury_address,
                    "native_balance": status.native_balance,
                    "token_balance": status.token_balance,
                    "gas_status": status.gas_status,
                    "pending_ops": status.pending_ops,
                    "abandoned_ops": status.abandoned_ops,
                    "platform_stats": status.platform_stats,
                },
                default=str,
                indent=2,
            )
        )
        return

    try:
        service.check_gas()
    except Exception as exc:
        logger.error("Failed to check treasury gas balance: {}", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
