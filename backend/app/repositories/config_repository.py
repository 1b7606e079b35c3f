"""Singleton configuration documents: secret fallbacks and the treasury nonce lock."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.models import APP_CONFIG_DOC, ConfigDocument


class ConfigRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Values

    def get_value(self, name: str, *, doc_key: str = APP_CONFIG_DOC) -> Any:
        document = self._session.get(ConfigDocument, doc_key)
        if document is None or not document.values:
            return None
        return document.values.get(name)

    def set_values(self, values: dict[str, Any], *, doc_key: str = APP_CONFIG_DOC) -> ConfigDocument:
        document = self._session.get(ConfigDocument, doc_key)
        if document is None:
            document = ConfigDocument(key=doc_key, values={})
            self._session.add(document)
        # JSON columns only notice reassignment.
        document.values = {**(document.values or {}), **values}
        return document

    def ensure_document(self, doc_key: str) -> ConfigDocument:
        document = self._session.get(ConfigDocument, doc_key)
        if document is None:
            document = ConfigDocument(key=doc_key, values={}, nonce=0)
            self._session.add(document)
            self._session.flush()
        return document

    # ------------------------------------------------------------------
    # Lock

    def try_acquire_lock(
        self, doc_key: str, lock_id: str, *, now: datetime, expires_at: datetime
    ) -> bool:
        """Take the lock unless another unexpired holder owns it."""

        result = self._session.execute(
            update(ConfigDocument)
            .where(ConfigDocument.key == doc_key)
            .where(
                or_(
                    ConfigDocument.lock_id.is_(None),
                    ConfigDocument.lock_expiry.is_(None),
                    ConfigDocument.lock_expiry <= now,
                )
            )
            .values(lock_id=lock_id, lock_expiry=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def extend_lock(self, doc_key: str, lock_id: str, *, expires_at: datetime) -> bool:
        result = self._session.execute(
            update(ConfigDocument)
            .where(ConfigDocument.key == doc_key, ConfigDocument.lock_id == lock_id)
            .values(lock_expiry=expires_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_lock(self, doc_key: str, lock_id: str) -> bool:
        result = self._session.execute(
            update(ConfigDocument)
            .where(ConfigDocument.key == doc_key, ConfigDocument.lock_id == lock_id)
            .values(lock_id=None, lock_expiry=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Nonce

    def stored_nonce(self, doc_key: str) -> int:
        value = self._session.execute(
            select(ConfigDocument.nonce).where(ConfigDocument.key == doc_key)
        ).scalar_one_or_none()
        return int(value or 0)

    def advance_nonce(self, doc_key: str, next_nonce: int, *, lock_id: str) -> bool:
        """Store ``next_nonce`` if the caller still holds the lock; never moves backwards."""

        result = self._session.execute(
            update(ConfigDocument)
            .where(
                ConfigDocument.key == doc_key,
                ConfigDocument.lock_id == lock_id,
                ConfigDocument.nonce < next_nonce,
            )
            .values(nonce=next_nonce)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def rewind_nonce(self, doc_key: str, nonce: int, *, lock_id: str) -> bool:
        """Move the stored nonce back to ``nonce``; only the lock holder may do this."""

        result = self._session.execute(
            update(ConfigDocument)
            .where(
                ConfigDocument.key == doc_key,
                ConfigDocument.lock_id == lock_id,
                ConfigDocument.nonce > nonce,
            )
            .values(nonce=nonce)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def lock_state(self, doc_key: str) -> tuple[str | None, datetime | None]:
        row = self._session.execute(
            select(ConfigDocument.lock_id, ConfigDocument.lock_expiry).where(
                ConfigDocument.key == doc_key
            )
        ).one_or_none()
        if row is None:
            return None, None
        return row.lock_id, row.lock_expiry
