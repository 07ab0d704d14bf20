from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from gatekeep.config import ConfigurationError, Settings, get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.admin import AdminService
from gatekeep.service.audit import AuditLogger
from gatekeep.service.auth import AuthOrchestrator
from gatekeep.service.credentials import CredentialStore
from gatekeep.service.email import EmailService
from gatekeep.service.lockout import LockoutGuard
from gatekeep.service.otp import OtpService
from gatekeep.service.primitives import Clock, RandomSource, SystemClock, SystemRandomSource
from gatekeep.service.session_policy import SessionPolicy
from gatekeep.service.tokens import TokenService
from gatekeep.service.two_factor import TwoFactorService
from gatekeep.storage.kv import KeyValueStore, MemoryKeyValueStore
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    """Holds the wired service instances for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        kv: Optional[KeyValueStore] = None,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.random = random_source or SystemRandomSource()
        logger.info("runtime_init_started", environment=self.settings.environment)

        self.store = MemoryStore(super_admin_email=self.settings.super_admin_email)
        self.kv = kv or self._build_kv()

        self.audit = AuditLogger()
        self.email = email_service or EmailService.from_settings(self.settings)
        self.credentials = CredentialStore(self.store, self.settings)
        self.lockout = LockoutGuard(self.store, clock=self.clock)
        self.policy = SessionPolicy()
        # Secret checks run here so a bad production config aborts startup
        self.tokens = TokenService(
            self.settings,
            self.store,
            self.credentials,
            self.policy,
            clock=self.clock,
            random_source=self.random,
        )
        self.two_factor = TwoFactorService(
            self.settings, clock=self.clock, random_source=self.random
        )
        self.otp = OtpService(self.kv, clock=self.clock, random_source=self.random)
        self.auth = AuthOrchestrator(
            self.settings,
            self.store,
            self.kv,
            credentials=self.credentials,
            lockout=self.lockout,
            policy=self.policy,
            tokens=self.tokens,
            two_factor=self.two_factor,
            otp=self.otp,
            email_service=self.email,
            audit=self.audit,
            clock=self.clock,
        )
        self.admin = AdminService(
            self.settings,
            self.store,
            credentials=self.credentials,
            two_factor=self.two_factor,
            otp=self.otp,
            audit=self.audit,
        )
        self._stop_event: Optional[asyncio.Event] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    def _build_kv(self) -> KeyValueStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisKeyValueStore(self.settings.redis_url)
                store.verify_connection()
                logger.info("runtime_kv_initialized", kv_type="redis")
                return store
            except (RedisError, OSError) as exc:
                redis_error = exc

        if self.settings.is_production and not self.settings.allow_memory_fallback:
            raise ConfigurationError(
                "Redis is required in production for OTPs and attempt counters; "
                "set REDIS_URL or ALLOW_MEMORY_FALLBACK=true for a single-process deployment"
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Using the in-process KV store; OTP consumption and rate limits are only "
                "atomic within this single process and do not survive restarts."
            ),
        )
        return MemoryKeyValueStore(self.clock)

    async def start(self) -> None:
        """Seed the super admin if configured and start the periodic OTP sweep."""
        if self.settings.super_admin_password:
            await self.admin.bootstrap_super_admin(self.settings.super_admin_password)
        if self._cleanup_task is None:
            self._stop_event = asyncio.Event()
            self._cleanup_task = asyncio.create_task(
                self.otp.run_cleanup(self.settings.otp_cleanup_interval_seconds, self._stop_event)
            )

    async def shutdown(self) -> None:
        if self._cleanup_task is not None and self._stop_event is not None:
            self._stop_event.set()
            await self._cleanup_task
            self._cleanup_task = None
            self._stop_event = None
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the Runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        runtime = None
        reset_settings_cache()
