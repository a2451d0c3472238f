from __future__ import annotations

import threading
from typing import Optional

from sessionkeeper.config import get_settings, reset_settings_cache
from sessionkeeper.logging import get_logger
from sessionkeeper.service.access import RightsLookup, StaticRightsLookup
from sessionkeeper.service.tokens import TokenService
from sessionkeeper.storage.memory import MemoryTokenStore, MemoryUserDirectory
from sessionkeeper.storage.postgres import PostgresTokenStore, PostgresUserDirectory

logger = get_logger(__name__)


class Runtime:
    """Holds the store and service instances for the FastAPI app."""

    def __init__(self, rights: Optional[RightsLookup] = None):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            if self.settings.use_memory_store:
                self.store = MemoryTokenStore(fs_root=self.settings.memory_store_path)
                self.users = MemoryUserDirectory()
            else:
                self.store = PostgresTokenStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
                self.users = PostgresUserDirectory(self.store.pool)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=self.settings.database_url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.rights: RightsLookup = rights or StaticRightsLookup()
        self.tokens = TokenService(self.store, self.settings)
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            issuer=self.settings.jwt_issuer,
            cleanup_interval_seconds=self.settings.cleanup_interval_seconds,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresTokenStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
