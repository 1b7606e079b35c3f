"""Serialise treasury-signed transactions across independent workers.

The lock, its expiry and the last stored nonce live on the ``treasury_nonce``
config document so that every worker process coordinates through the same
row. Each step runs in its own short transaction; the chain call itself never
happens inside an open database transaction.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError

from app.core.config import Settings, get_settings
from app.db import SessionFactory, is_write_conflict, session_scope
from app.models import TREASURY_NONCE_DOC, utcnow
from app.repositories import ConfigRepository

from .client import ChainTimeoutError

T = TypeVar("T")

NONCE_ERROR_MARKERS = ("nonce", "replacement transaction", "already known")


class NonceLockTimeout(RuntimeError):
    pass


def is_nonce_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in NONCE_ERROR_MARKERS)


class TreasuryNonceCoordinator:
    def __init__(
        self,
        chain_nonce: Callable[[str], int],
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        doc_key: str = TREASURY_NONCE_DOC,
    ) -> None:
        self.settings = settings or get_settings()
        self._chain_nonce = chain_nonce
        self._scope = session_factory or session_scope
        self._sleep = sleep
        self._clock = clock
        self._doc_key = doc_key
        self._ttl = timedelta(seconds=self.settings.nonce_lock_ttl_seconds)

    def run(self, treasury_address: str, callback: Callable[[int], T]) -> T:
        """Invoke ``callback`` with a nonce no other caller will observe."""

        lock_id = uuid.uuid4().hex
        self._ensure_document()
        self._acquire(lock_id)
        try:
            max_retries = self.settings.nonce_max_retries
            for attempt in range(1, max_retries + 1):
                nonce = self._next_nonce(treasury_address)
                self._extend(lock_id)
                try:
                    result = callback(nonce)
                except ChainTimeoutError as exc:
                    if exc.tx_hash is not None:
                        # Broadcast without a receipt: the nonce is spent either way.
                        self._store(lock_id, nonce + 1)
                    raise
                except Exception as exc:
                    if not is_nonce_error(exc) or attempt >= max_retries:
                        raise
                    delay = self.settings.nonce_retry_backoff_seconds * attempt
                    logger.warning(
                        "Treasury nonce {} rejected (attempt {}/{}): {}; retrying in {}s",
                        nonce,
                        attempt,
                        max_retries,
                        exc,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                self._store(lock_id, nonce + 1)
                return result
            raise RuntimeError("nonce retry loop exhausted without a result")  # pragma: no cover
        finally:
            self._release(lock_id)

    def rewind(self, treasury_address: str, dropped_nonce: int) -> bool:
        """Hand a dropped broadcast's nonce out again if the chain never used it."""

        lock_id = uuid.uuid4().hex
        self._ensure_document()
        self._acquire(lock_id)
        try:
            if int(self._chain_nonce(treasury_address)) > dropped_nonce:
                return False
            with self._scope() as session:
                rewound = ConfigRepository(session).rewind_nonce(
                    self._doc_key, dropped_nonce, lock_id=lock_id
                )
            if rewound:
                logger.warning("Treasury nonce rewound to {} after a dropped broadcast", dropped_nonce)
            return rewound
        finally:
            self._release(lock_id)

    # ------------------------------------------------------------------
    # Lock lifecycle

    def _ensure_document(self) -> None:
        try:
            with self._scope() as session:
                ConfigRepository(session).ensure_document(self._doc_key)
        except IntegrityError:
            # Another worker created the document first.
            pass

    def _acquire(self, lock_id: str) -> None:
        attempts = self.settings.nonce_lock_poll_attempts
        interval = self.settings.nonce_lock_poll_interval_seconds
        for attempt in range(1, attempts + 1):
            now = self._clock()
            try:
                with self._scope() as session:
                    acquired = ConfigRepository(session).try_acquire_lock(
                        self._doc_key, lock_id, now=now, expires_at=now + self._ttl
                    )
            except DBAPIError as exc:
                if not is_write_conflict(exc):
                    raise
                acquired = False
            if acquired:
                if attempt > 1:
                    logger.info("Treasury nonce lock acquired after {} attempts", attempt)
                return
            if attempt < attempts:
                self._sleep(interval)
        raise NonceLockTimeout(
            f"Could not acquire treasury nonce lock after {attempts} attempts"
        )

    def _extend(self, lock_id: str) -> None:
        with self._scope() as session:
            held = ConfigRepository(session).extend_lock(
                self._doc_key, lock_id, expires_at=self._clock() + self._ttl
            )
        if not held:
            raise NonceLockTimeout("Treasury nonce lock expired before the transaction was sent")

    def _next_nonce(self, treasury_address: str) -> int:
        chain_nonce = int(self._chain_nonce(treasury_address))
        with self._scope() as session:
            stored_nonce = ConfigRepository(session).stored_nonce(self._doc_key)
        nonce = max(chain_nonce, stored_nonce)
        logger.debug("Treasury nonce chain={} stored={} using={}", chain_nonce, stored_nonce, nonce)
        return nonce

    def _store(self, lock_id: str, next_nonce: int) -> None:
        with self._scope() as session:
            advanced = ConfigRepository(session).advance_nonce(
                self._doc_key, next_nonce, lock_id=lock_id
            )
        if not advanced:
            logger.warning("Stored treasury nonce already at or beyond {}", next_nonce)

    def _release(self, lock_id: str) -> None:
        try:
            with self._scope() as session:
                released = ConfigRepository(session).release_lock(self._doc_key, lock_id)
        except Exception:
            logger.exception("Failed to release treasury nonce lock {}; it expires with its TTL", lock_id)
            return
        if not released:
            logger.warning("Treasury nonce lock {} was no longer held at release", lock_id)


__all__ = [
    "NONCE_ERROR_MARKERS",
    "NonceLockTimeout",
    "TreasuryNonceCoordinator",
    "is_nonce_error",
]
