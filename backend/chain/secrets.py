from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from functools import lru_cache

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, session_scope
from app.repositories import ConfigRepository


class SecretNotFound(LookupError):
    pass


class SecretStore:
    """Resolve signing material and config secrets.

    Lookup order is the in-process cache, the managed store (environment
    variables under ``secret_store_prefix`` and the matching settings field),
    then the ``app`` config document. Resolved values live for the life of the
    process.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: SessionFactory | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory or session_scope
        self._environ = environ if environ is not None else os.environ
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_secret(self, name: str) -> str:
        with self._lock:
            cached = self._cache.get(name)
        if cached:
            return cached

        value = self._from_managed_store(name)
        source = "managed store"
        if not value:
            logger.warning("Secret {} unavailable in managed store; using config document", name)
            value = self._from_config_document(name)
            source = "config document"
        if not value:
            raise SecretNotFound(f'Secret "{name}" not found in managed store or config document')

        with self._lock:
            self._cache[name] = value
        logger.info("Loaded secret {} from {}", name, source)
        return value

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _from_managed_store(self, name: str) -> str | None:
        env_value = self._environ.get(f"{self.settings.secret_store_prefix}{name.upper()}")
        if env_value:
            return env_value
        configured = getattr(self.settings, name, None)
        if isinstance(configured, str) and configured:
            return configured
        return None

    def _from_config_document(self, name: str) -> str | None:
        with self._session_factory() as session:
            value = ConfigRepository(session).get_value(name)
        return str(value) if value else None


@lru_cache
def get_secret_store() -> SecretStore:
    return SecretStore()


__all__ = ["SecretNotFound", "SecretStore", "get_secret_store"]
