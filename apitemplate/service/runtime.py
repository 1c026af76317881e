from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis import RedisError

from apitemplate.config import Settings, get_settings, reset_settings_cache
from apitemplate.logging import get_logger
from apitemplate.service.auth import AuthService
from apitemplate.service.email import EmailService
from apitemplate.service.i18n import TranslationTable
from apitemplate.service.passwords import CredentialVerifier
from apitemplate.service.roles import RoleService
from apitemplate.service.users import UserService
from apitemplate.storage.memory import MemoryCache, MemoryStore
from apitemplate.storage.postgres import PostgresStore
from apitemplate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        password = parsed.password
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                database_url=_mask_url_password(self.settings.database_url),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._build_cache()
        self.translations = TranslationTable.load(
            default_locale=self.settings.default_locale
        )
        self.verifier = CredentialVerifier(
            time_cost=self.settings.password_time_cost,
            memory_cost=self.settings.password_memory_cost,
            parallelism=self.settings.password_parallelism,
        )
        self.auth = AuthService(
            self.store, self.cache, self.settings, verifier=self.verifier
        )
        self.users = UserService(self.store, self.verifier, self.settings)
        self.roles = RoleService(self.store)
        self.email = EmailService(
            self.translations,
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            reset_url=self.settings.password_reset_url,
            reset_expiry_minutes=self.settings.reset_token_expiry_minutes,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            locales=list(self.translations.locales),
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )

    def _build_cache(self) -> Union[RedisCache, SyncRedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                cache.verify_connection()
                return cache
            except (RedisError, OSError, ValueError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens and presence tracking; start Redis or "
                "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=type(redis_error).__name__ if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens and presence "
                "markers live in process memory and do not survive restarts."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def aclose(self) -> None:
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            elif isinstance(runtime.cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
                else:
                    loop.create_task(runtime.cache.close())
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
