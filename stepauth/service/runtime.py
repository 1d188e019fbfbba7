from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from stepauth.config import Settings, get_settings, reset_settings_cache
from stepauth.logging import get_logger
from stepauth.service.credentials import CredentialVerifier
from stepauth.service.delivery import OtpNotifier
from stepauth.service.login import LoginOrchestrator
from stepauth.service.otp import OtpEngine
from stepauth.service.sessions import SessionManager
from stepauth.service.tokens import TokenSigner
from stepauth.storage.memory import MemoryStore
from stepauth.storage.postgres import PostgresStore
from stepauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore]
        if self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(
                self.settings.database_url,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
            )

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Issuance locks are process-local without Redis.",
                )

        self.notifier = OtpNotifier.from_settings(self.settings)
        self.verifier = CredentialVerifier(self.store)
        self.otp = OtpEngine(self.store, self.settings, self.notifier, cache=self.cache)
        self.sessions = SessionManager(self.store, self.settings)
        self.signer = TokenSigner(self.settings)
        self.login = LoginOrchestrator(
            self.store,
            self.settings,
            self.verifier,
            self.otp,
            self.sessions,
            self.signer,
        )
        logger.info("runtime_init_completed", store_type=store_type, redis=bool(self.cache))

    async def start(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()

    async def close(self) -> None:
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
