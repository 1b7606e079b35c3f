"""Repository abstractions for database interactions."""

from .activity_repository import ActivityRepository
from .config_repository import ConfigRepository
from .ledger_repository import LedgerRepository
from .mirror_repository import MirrorJobRepository
from .wallet_repository import WalletRepository

__all__ = [
    "ActivityRepository",
    "ConfigRepository",
    "LedgerRepository",
    "MirrorJobRepository",
    "WalletRepository",
]
