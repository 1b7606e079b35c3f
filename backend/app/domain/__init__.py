"""Domain models shared across the ledger services."""

from .models import (
    AccountSnapshot,
    ActivityResult,
    ActivitySubmission,
    BetReceipt,
    Caller,
    CancellationSummary,
    ClaimSummary,
    GpsPoint,
    GroupOutcome,
    MarketGroupReceipt,
    MarketReceipt,
    ResolutionSummary,
    ValidationResult,
    as_utc,
)

__all__ = [
    "AccountSnapshot",
    "ActivityResult",
    "ActivitySubmission",
    "BetReceipt",
    "Caller",
    "CancellationSummary",
    "ClaimSummary",
    "GpsPoint",
    "GroupOutcome",
    "MarketGroupReceipt",
    "MarketReceipt",
    "ResolutionSummary",
    "ValidationResult",
    "as_utc",
]
