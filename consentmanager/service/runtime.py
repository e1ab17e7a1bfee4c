from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from consentmanager.config import get_settings, reset_settings_cache
from consentmanager.logging import get_logger
from consentmanager.service.lockout import LockedUserService
from consentmanager.service.otp import OtpServiceClient
from consentmanager.service.session import SessionService
from consentmanager.service.tokens import TokenService
from consentmanager.service.users import UserDirectory
from consentmanager.storage.cache import MemoryCacheAdapter, RedisCache, RedisCacheAdapter
from consentmanager.storage.memory import MemoryStore
from consentmanager.storage.postgres import PostgresStore

logger = get_logger(__name__)

CacheBackend = Union[MemoryCacheAdapter, RedisCacheAdapter]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
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
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.redis: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                redis = RedisCache(self.settings.redis_url)
                redis.verify_connection()
                self.redis = redis
            except Exception as exc:
                redis_error = exc
                self.redis = None

        if not self.redis:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for the token blacklist and OTP sessions; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Running without Redis; blacklist and OTP sessions are process-local.",
            )

        access_ttl = self.settings.access_token_ttl_minutes * 60
        refresh_ttl = self.settings.refresh_token_ttl_minutes * 60
        self.blacklisted_tokens = self._cache(prefix="", expiry_seconds=access_ttl)
        self.unverified_sessions = self._cache(
            prefix=self.settings.unverified_session_prefix,
            expiry_seconds=self.settings.otp_expiry_seconds,
        )
        self.revoked_refresh_tokens = self._cache(
            prefix=self.settings.refresh_revocation_prefix,
            expiry_seconds=refresh_ttl,
        )

        self.otp_client = OtpServiceClient(
            self.settings.otp_service_url,
            timeout=self.settings.otp_request_timeout_seconds,
        )
        self.users = UserDirectory(self.store)
        self.lockout = LockedUserService.from_settings(self.store, self.settings)
        self.tokens = TokenService(
            self.store, self.revoked_refresh_tokens, self.otp_client, self.settings
        )
        self.sessions = SessionService(
            token_service=self.tokens,
            blacklisted_tokens=self.blacklisted_tokens,
            unverified_sessions=self.unverified_sessions,
            locked_user_service=self.lockout,
            user_directory=self.users,
            otp_client=self.otp_client,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.redis is not None,
            otp_service_url=self.settings.otp_service_url,
            otp_expiry_minutes=self.settings.otp_expiry_minutes,
            lockout_max_attempts=self.settings.lockout_max_attempts,
        )

    def _cache(self, *, prefix: str, expiry_seconds: int) -> CacheBackend:
        if self.redis is not None:
            return self.redis.adapter(prefix=prefix, expiry_seconds=expiry_seconds)
        return MemoryCacheAdapter(prefix=prefix, expiry_seconds=expiry_seconds)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# Redis closes scheduled from inside a running loop, held until they finish
_pending_closes: set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
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


def _finish_close(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("redis_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.redis is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.redis.close())
            else:
                task = loop.create_task(runtime.redis.close())
                _pending_closes.add(task)
                task.add_done_callback(_finish_close)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
