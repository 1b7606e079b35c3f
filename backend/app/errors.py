"""Error taxonomy surfaced by ledger transitions."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors that abort a ledger transition."""

    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(LedgerError):
    code = "unauthenticated"


class PermissionDenied(LedgerError):
    code = "permission-denied"


class InvalidArgument(LedgerError):
    code = "invalid-argument"


class NotFound(LedgerError):
    code = "not-found"


class FailedPrecondition(LedgerError):
    code = "failed-precondition"


class InsufficientBalance(FailedPrecondition):
    pass


class MarketNotOpen(FailedPrecondition):
    pass


class ResourceExhausted(LedgerError):
    code = "resource-exhausted"


class ChainMirrorFailure(Exception):
    """An on-chain mirror attempt failed; recorded on the mirror job, never raised to callers."""


__all__ = [
    "ChainMirrorFailure",
    "FailedPrecondition",
    "InsufficientBalance",
    "InvalidArgument",
    "LedgerError",
    "MarketNotOpen",
    "NotFound",
    "PermissionDenied",
    "ResourceExhausted",
    "Unauthenticated",
]
