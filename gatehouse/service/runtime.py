from __future__ import annotations

import asyncio
import threading
from dataclasses import replace
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from gatehouse.config import Settings, get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.abuse_guard import AbuseGuard, AbuseWhitelist
from gatehouse.service.activity import SessionActivityMonitor
from gatehouse.service.credentials import CredentialValidator, LoginBackoff, assess_password
from gatehouse.service.lockout import LockoutTracker
from gatehouse.service.notifications import EmailDispatcher, NotificationDispatcher
from gatehouse.service.otp import OTPChallengeManager
from gatehouse.service.tokens import TokenIssuer
from gatehouse.storage.directory import CredentialDirectory, MemoryDirectory
from gatehouse.storage.postgres import PostgresDirectory
from gatehouse.storage.ttl_store import (
    MemoryTTLStore,
    RedisTTLStore,
    SyncRedisTTLStore,
    TTLStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


def _build_store(settings: Settings) -> TTLStore:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode keeps the pool off any one event loop
            store: Union[RedisTTLStore, SyncRedisTTLStore]
            if settings.test_mode:
                store = SyncRedisTTLStore(settings.redis_url)
            else:
                store = RedisTTLStore(settings.redis_url)
            store.verify_connection()
            return store
        except (RedisError, OSError) as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for lockouts, OTP challenges, token revocation and rate limits; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; lockouts, OTP challenges and "
            "rate limits are held in this process only."
        ),
        mode=fallback_mode,
    )
    return MemoryTTLStore()


def _build_directory(settings: Settings) -> CredentialDirectory:
    if not settings.use_memory_store:
        return PostgresDirectory(settings.database_url)
    directory = MemoryDirectory()
    for seed in settings.seed_users:
        password = str(seed.get("password", ""))
        assessment = assess_password(password)
        if not assessment.is_valid:
            logger.warning(
                "seed_user_weak_password",
                strength=assessment.strength,
                issues=assessment.issues,
            )
        directory.add_user(
            seed["email"],
            password,
            role=seed.get("role", "user"),
            is_active=bool(seed.get("is_active", True)),
            display_name=seed.get("display_name"),
            user_id=seed.get("id"),
        )
    logger.info("memory_directory_seeded", users=len(directory))
    return directory


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[TTLStore] = None,
        directory: Optional[CredentialDirectory] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or _build_store(self.settings)
        try:
            self.directory = directory or _build_directory(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_directory_init_failed",
                directory_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        s = self.settings
        self.dispatcher = dispatcher or EmailDispatcher(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
            code_ttl_minutes=max(1, s.otp_ttl_seconds // 60),
        )
        self.lockout = LockoutTracker(
            self.store,
            threshold=s.lockout_threshold,
            window_seconds=s.lockout_window_seconds,
            lock_seconds=s.lockout_duration_seconds,
        )
        self.backoff = LoginBackoff(
            self.store,
            base_seconds=s.backoff_base_seconds,
            threshold=s.lockout_threshold,
            max_delay_seconds=s.backoff_max_seconds,
        )
        self.credentials = CredentialValidator(self.directory, self.lockout, self.backoff)
        self.tokens = TokenIssuer(
            self.directory,
            self.store,
            access_secret=s.jwt_secret,
            refresh_secret=s.jwt_refresh_secret,
            access_ttl_seconds=s.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=s.refresh_token_ttl_minutes * 60,
            revoke_rotated_refresh_tokens=s.revoke_rotated_refresh_tokens,
        )
        self.otp = OTPChallengeManager(
            self.store,
            self.dispatcher,
            self.directory,
            self.tokens,
            ttl_seconds=s.otp_ttl_seconds,
            max_attempts=s.otp_max_attempts,
            max_resends=s.otp_max_resends,
            extend_ttl_on_failure=s.otp_extend_ttl_on_failure,
        )
        self.guard = AbuseGuard(
            self.store,
            whitelist=AbuseWhitelist.build(
                ips=s.rate_limit_whitelist_ips, roles=s.rate_limit_whitelist_roles
            ),
        )
        self.guard.policies["login"] = replace(
            self.guard.policy("login"),
            limit=s.login_rate_limit,
            window_seconds=s.login_rate_window_seconds,
        )
        self.activity = SessionActivityMonitor(self.store, timezone_name=s.activity_timezone)
        # Replaced in tests so failed logins do not really wait
        self.sleep = asyncio.sleep

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            directory_type=type(self.directory).__name__,
            email_configured=getattr(self.dispatcher, "is_configured", False),
        )

    async def close(self) -> None:
        await self.store.close()
        close_directory = getattr(self.directory, "close", None)
        if close_directory is not None:
            close_directory()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment.

    Only permitted in test mode; production processes keep one runtime.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("reset_runtime_for_tests is only allowed with TEST_MODE=true")
        previous = runtime
        runtime = Runtime(settings)

    if previous is not None and isinstance(previous.store, SyncRedisTTLStore):
        previous.store.client.close()
    return runtime
