from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from classgate.config import Settings, get_settings, reset_settings_cache
from classgate.logging import get_logger
from classgate.service.admin import AdminService
from classgate.service.audit import AuditRecorder
from classgate.service.auth import AuthService
from classgate.service.email import EmailService
from classgate.service.guard import AuthorizationGuard
from classgate.service.system_settings import SystemSettingsService
from classgate.service.tokens import TokenService
from classgate.service.users import UserService
from classgate.storage.memory import MemoryStore
from classgate.storage.postgres import PostgresStore
from classgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache]
RateDecision = Tuple[bool, int, int]

DEFAULT_WINDOW_SECONDS = 60


def _redis_location(url: Optional[str]) -> str:
    """Host, port and db of a Redis URL; credentials are never logged."""
    if not url:
        return "unset"
    try:
        parts = urlsplit(url)
        return f"{parts.hostname or '?'}:{parts.port or 6379}{parts.path or ''}"
    except ValueError:
        return "unparseable"


class LocalTokenBuckets:
    """Per-process buckets used when Redis is unavailable."""

    def __init__(self) -> None:
        self._levels: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    async def consume(self, key: str, limit: int, window_seconds: int, cost: int) -> RateDecision:
        per_second = limit / window_seconds
        now = time.monotonic()
        async with self._lock:
            level, seen = self._levels.get(key, (float(limit), now))
            level = min(float(limit), level + max(0.0, now - seen) * per_second)
            if level >= cost:
                level -= cost
                self._levels[key] = (level, now)
                return True, int(level), 0
            self._levels[key] = (level, now)
            return False, int(level), int((cost - level) / per_second) + 1


def _build_store(settings: Settings):
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url)


def _connect_cache(settings: Settings) -> Tuple[Optional[Cache], Optional[Exception]]:
    if not settings.redis_url:
        return None, None
    # blocking client in test mode; pytest gives each test its own loop
    cache_cls = SyncRedisCache if settings.test_mode else RedisCache
    try:
        cache = cache_cls(settings.redis_url)
        cache.verify_connection()
    except Exception as exc:
        return None, exc
    return cache, None


class Runtime:
    """Process-wide wiring of the store, cache and services."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_kind = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error("runtime_store_init_failed", store_type=store_kind, error=str(exc))
            raise

        self.cache, cache_error = _connect_cache(self.settings)
        if self.cache is None:
            self._accept_missing_cache(cache_error)
        self.local_buckets = LocalTokenBuckets()

        self.tokens = TokenService(self.settings)
        self.audit = AuditRecorder(self.store)
        self.email = EmailService.from_settings(self.settings)
        self.system_settings = SystemSettingsService(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.audit,
            self.email,
            self.system_settings,
            self.settings,
        )
        self.guard = AuthorizationGuard(self.audit)
        self.users = UserService(self.store, self.audit)
        self.admin = AdminService(
            self.store,
            self.audit,
            self.system_settings,
            self.settings,
            cache=self.cache,
            cache_fallback=self.cache is None,
        )
        logger.info(
            "runtime_ready",
            store_type=store_kind,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            environment=self.settings.environment,
        )

    def _accept_missing_cache(self, error: Optional[Exception]) -> None:
        if self.settings.test_mode:
            reason = "TEST_MODE"
        elif self.settings.allow_redis_fallback_dev:
            reason = "ALLOW_REDIS_FALLBACK_DEV"
        else:
            raise RuntimeError(
                "Redis is required for auth rate limits; start Redis or set "
                "ALLOW_REDIS_FALLBACK_DEV=true for local development"
            ) from error
        logger.warning(
            "rate_limits_in_process",
            redis=_redis_location(self.settings.redis_url),
            error=str(error) if error else "redis_url_missing",
            mode=reason,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> RateDecision:
    """Take ``cost`` tokens from the bucket for ``key``.

    Returns ``(allowed, remaining, retry_after)``. A non-positive limit
    disables the check.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = DEFAULT_WINDOW_SECONDS
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    return await runtime.local_buckets.consume(key, limit, window_seconds, cost)
