from __future__ import annotations

from gatehouse.logging import get_logger
from gatehouse.service.errors import DependencyUnavailable
from gatehouse.storage.ttl_store import StoreUnavailable, TTLStore

logger = get_logger(__name__)


class LockoutTracker:
    """Per-identifier failed-login counter with a temporary lock.

    Lockout decides whether a password is even checked, so every store error
    is raised as ``DependencyUnavailable`` rather than treated as unlocked.
    """

    def __init__(
        self,
        store: TTLStore,
        *,
        threshold: int = 5,
        window_seconds: int = 3600,
        lock_seconds: int = 900,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds

    @staticmethod
    def _failures_key(identifier: str) -> str:
        return f"failed_attempts:{identifier}"

    @staticmethod
    def _lock_key(identifier: str) -> str:
        return f"lockout:{identifier}"

    async def is_locked(self, identifier: str) -> bool:
        try:
            return await self.store.get(self._lock_key(identifier)) is not None
        except StoreUnavailable as exc:
            logger.error("lockout_check_failed", identifier=identifier, error=str(exc))
            raise DependencyUnavailable("Unable to verify account lock state") from exc

    async def record_failure(self, identifier: str, ip: str) -> int:
        """Count a failed attempt; returns the count after incrementing."""
        try:
            attempts = await self.store.increment(
                self._failures_key(identifier), self.window_seconds
            )
        except StoreUnavailable as exc:
            logger.error("lockout_record_failed", identifier=identifier, error=str(exc))
            raise DependencyUnavailable("Unable to record failed login") from exc
        logger.warning(
            "login_failed_attempt",
            identifier=identifier,
            ip=ip,
            attempts=attempts,
            threshold=self.threshold,
        )
        return attempts

    async def lock(self, identifier: str) -> None:
        try:
            await self.store.set(self._lock_key(identifier), "1", self.lock_seconds)
        except StoreUnavailable as exc:
            logger.error("lockout_set_failed", identifier=identifier, error=str(exc))
            raise DependencyUnavailable("Unable to lock account") from exc
        logger.warning(
            "account_locked", identifier=identifier, lock_seconds=self.lock_seconds
        )

    async def clear(self, identifier: str) -> None:
        try:
            await self.store.delete(self._failures_key(identifier))
            await self.store.delete(self._lock_key(identifier))
        except StoreUnavailable as exc:
            logger.error("lockout_clear_failed", identifier=identifier, error=str(exc))
            raise DependencyUnavailable("Unable to reset login attempts") from exc

    async def remaining_lock_seconds(self, identifier: str) -> int:
        try:
            remaining = await self.store.ttl(self._lock_key(identifier))
        except StoreUnavailable as exc:
            raise DependencyUnavailable("Unable to read lock state") from exc
        return max(0, remaining)
