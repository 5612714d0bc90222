from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tripauth.config import get_settings, reset_settings_cache
from tripauth.logging import get_logger
from tripauth.service.auth import AuthService
from tripauth.service.identity import GoogleIdentityExchange, IdentityExchange
from tripauth.service.tokens import TokenCodec, TokenSettings
from tripauth.storage.memory import MemoryStore
from tripauth.storage.postgres import PostgresStore
from tripauth.storage.sealing import TokenSealer

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store, codec and auth service for the process."""

    def __init__(self, *, identity: IdentityExchange | None = None):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        self.sealer = TokenSealer.from_settings(self.settings)
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root, sealer=self.sealer)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    sealer=self.sealer,
                    statement_timeout=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type=store_type,
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.codec = TokenCodec(TokenSettings.from_settings(self.settings))
        self.identity = identity or GoogleIdentityExchange.from_settings(self.settings)
        self.auth = AuthService(
            self.store, self.store, self.identity, self.codec, self.settings
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking so the common path takes no lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, identity: IdentityExchange | None = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(identity=identity)
        return runtime
