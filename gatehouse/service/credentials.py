from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, NoReturn, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AccountInactive,
    AccountLocked,
    InvalidCredentials,
)
from gatehouse.service.lockout import LockoutTracker
from gatehouse.storage.directory import CredentialDirectory, normalize_identifier
from gatehouse.storage.models import Principal
from gatehouse.storage.ttl_store import StoreUnavailable, TTLStore

logger = get_logger(__name__)


class LoginBackoff:
    """Exponential delay for repeated failures of one identifier from one IP.

    Advisory only: a store outage yields no delay instead of an error.
    """

    def __init__(
        self,
        store: TTLStore,
        *,
        base_seconds: float = 1.0,
        threshold: int = 5,
        max_delay_seconds: float = 300.0,
    ) -> None:
        self.store = store
        self.base_seconds = base_seconds
        self.threshold = threshold
        self.max_delay_seconds = max_delay_seconds

    @staticmethod
    def _key(identifier: str, ip: str) -> str:
        return f"login_backoff:{identifier}:{ip}"

    def delay_for_attempts(self, attempts: int) -> float:
        if attempts <= self.threshold:
            return 0.0
        return min(
            self.base_seconds * 2 ** (attempts - self.threshold),
            self.max_delay_seconds,
        )

    async def record_failure(self, identifier: str, ip: str) -> int:
        try:
            return await self.store.increment(
                self._key(identifier, ip), int(self.max_delay_seconds)
            )
        except StoreUnavailable as exc:
            logger.warning("login_backoff_store_unavailable", op="record", error=str(exc))
            return 0

    async def delay_for(self, identifier: str, ip: str) -> float:
        try:
            raw = await self.store.get(self._key(identifier, ip))
        except StoreUnavailable as exc:
            logger.warning("login_backoff_store_unavailable", op="read", error=str(exc))
            return 0.0
        try:
            attempts = int(raw) if raw is not None else 0
        except ValueError:
            attempts = 0
        return self.delay_for_attempts(attempts)

    async def reset(self, identifier: str, ip: str) -> None:
        try:
            await self.store.delete(self._key(identifier, ip))
        except StoreUnavailable as exc:
            logger.warning("login_backoff_store_unavailable", op="reset", error=str(exc))


class CredentialValidator:
    """First login factor: password check guarded by account lockout."""

    def __init__(
        self,
        directory: CredentialDirectory,
        lockout: LockoutTracker,
        backoff: Optional[LoginBackoff] = None,
    ) -> None:
        self.directory = directory
        self.lockout = lockout
        self.backoff = backoff

    async def _record_backoff(self, identifier: str, ip: str) -> None:
        if self.backoff is not None:
            await self.backoff.record_failure(identifier, ip)

    async def _reject(self, identifier: str, ip: str) -> NoReturn:
        """Count a failed password for the identifier, locking at the threshold.

        Unknown identifiers go through the same path as wrong passwords so
        the response never reveals whether an account exists.
        """
        await self._record_backoff(identifier, ip)
        attempts = await self.lockout.record_failure(identifier, ip)
        if attempts >= self.lockout.threshold:
            await self.lockout.lock(identifier)
            raise AccountLocked(
                "Too many failed attempts. Account is temporarily locked.",
                detail={"retryAfter": self.lockout.lock_seconds},
            )
        raise InvalidCredentials()

    async def validate_login(self, identifier: str, password: str, ip: str) -> Principal:
        identifier = normalize_identifier(identifier)

        if await self.lockout.is_locked(identifier):
            retry_after = await self.lockout.remaining_lock_seconds(identifier)
            # Rejections while locked keep growing the backoff delay
            await self._record_backoff(identifier, ip)
            logger.warning("login_rejected_locked", identifier=identifier, ip=ip)
            raise AccountLocked(detail={"retryAfter": retry_after})

        principal = self.directory.find_by_identifier(identifier)
        if principal is None:
            await self._reject(identifier, ip)

        if not principal.is_active:
            logger.warning("login_rejected_inactive", user_id=principal.id, ip=ip)
            raise AccountInactive()

        if not self.directory.verify_password(principal, password):
            await self._reject(identifier, ip)

        await self.lockout.clear(identifier)
        if self.backoff is not None:
            await self.backoff.reset(identifier, ip)
        logger.info("login_password_accepted", user_id=principal.id, ip=ip)
        return principal


_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\];'/\\`~]")
_REPEATED_RUN = re.compile(r"(.)\1{2,}")
_COMMON_SEQUENCE = re.compile(r"123|abc|qwe", re.IGNORECASE)

_STRENGTH_BUCKETS = (
    (4, "very_weak"),
    (6, "weak"),
    (8, "medium"),
    (10, "strong"),
)


@dataclass
class PasswordAssessment:
    is_valid: bool
    strength: str
    score: int
    issues: List[str] = field(default_factory=list)


def assess_password(password: str) -> PasswordAssessment:
    """Check the minimum password policy and score its strength out of 10."""
    password = password or ""
    issues: List[str] = []
    has_lower = bool(re.search(r"[a-z]", password))
    has_upper = bool(re.search(r"[A-Z]", password))
    has_digit = bool(re.search(r"\d", password))
    has_special = bool(_SPECIAL_CHARS.search(password))

    if len(password) < 8:
        issues.append("Password must be at least 8 characters long")
    if not has_upper:
        issues.append("Password must contain at least one uppercase letter")
    if not has_lower:
        issues.append("Password must contain at least one lowercase letter")
    if not has_digit:
        issues.append("Password must contain at least one number")
    if not has_special:
        issues.append("Password must contain at least one special character")

    score = 0
    for length in (8, 12, 16):
        if len(password) >= length:
            score += 2
    score += int(has_lower) + int(has_upper) + int(has_digit)
    if has_special:
        score += 2
    if not _REPEATED_RUN.search(password):
        score += 1
    if not _COMMON_SEQUENCE.search(password):
        score += 1
    score = min(score, 10)

    strength = "very_strong"
    for ceiling, label in _STRENGTH_BUCKETS:
        if score < ceiling:
            strength = label
            break

    return PasswordAssessment(
        is_valid=not issues, strength=strength, score=score, issues=issues
    )
