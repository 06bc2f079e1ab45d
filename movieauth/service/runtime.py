from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlsplit

from movieauth.config import Settings, get_settings, reset_settings_cache
from movieauth.logging import get_logger
from movieauth.service.auth import AuthService, CredentialStore
from movieauth.service.email import EmailService
from movieauth.service.events import EventPublisher
from movieauth.service.guard import AccountGuard
from movieauth.service.rate_limit import RateLimiter
from movieauth.service.sessions import SessionManager
from movieauth.service.tokens import TokenService
from movieauth.storage.memory import MemoryStore
from movieauth.storage.postgres import PostgresStore
from movieauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = RedisCache | SyncRedisCache


def _hide_password(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@host:6379/0`` -> ``redis://:***@host:6379/0``."""
    if not url:
        return url
    parts = urlsplit(url)
    if not parts.password:
        return url
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return parts._replace(netloc=f"{user}:***@{hostinfo}").geturl()


def _open_store(settings: Settings) -> CredentialStore:
    kind = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: CredentialStore = MemoryStore(settings.memory_store_path)
        else:
            store = PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error("runtime_store_init_failed", store_type=kind, error_type=type(exc).__name__)
        raise
    logger.info("runtime_store_initialized", store_type=kind)
    return store


def _open_cache(settings: Settings) -> Optional[Cache]:
    """Connect to Redis, or fall back to in-process counters where allowed.

    Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV a missing or unreachable
    Redis is fatal.
    """
    failure: Exception | None = None
    if settings.redis_url:
        # the sync client keeps tests free of event-loop-bound pools
        cache: Cache = (
            SyncRedisCache(settings.redis_url)
            if settings.test_mode
            else RedisCache(settings.redis_url)
        )
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for shared rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_hide_password(settings.redis_url),
        reason=type(failure).__name__ if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


def _email_from(settings: Settings) -> EmailService:
    return EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        smtp_timeout=settings.smtp_timeout_seconds,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        frontend_url=settings.frontend_url,
        reset_ttl_minutes=settings.reset_token_ttl_minutes,
        verification_ttl_hours=settings.email_verification_ttl_hours,
    )


class Runtime:
    """Process-wide wiring of settings, storage and the auth services."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = _open_store(self.settings)
        self.cache = _open_cache(self.settings)

        self.tokens = TokenService(self.settings)
        self.guard = AccountGuard(self.settings)
        self.sessions = SessionManager(self.settings)
        self.rate_limiter = RateLimiter.from_settings(self.settings, self.cache)
        self.email = _email_from(self.settings)
        self.events = EventPublisher(
            self.settings.event_webhook_url, timeout=self.settings.event_timeout_seconds
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.guard,
            self.sessions,
            self.settings,
            email=self.email,
            events=self.events,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            events_enabled=self.events.is_enabled,
            internal_api_enabled=bool(self.settings.internal_service_token),
        )

    def close_cache(self) -> None:
        cache, self.cache = self.cache, None
        if cache is None:
            return
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(cache.close())
        else:
            task = loop.create_task(cache.close())
            _closing.add(task)
            task.add_done_callback(_closed)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
_closing: set[asyncio.Task] = set()


def _closed(task: asyncio.Task) -> None:
    _closing.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error_type=type(exc).__name__)


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Drop the singleton and build a fresh one from re-read settings."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close_cache()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error_type=type(exc).__name__)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
