from __future__ import annotations

import hmac
import json
import re
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AccountInactive,
    DependencyUnavailable,
    OTPAttemptsExhausted,
    OTPMismatch,
    OTPResendExhausted,
    OTPSessionNotFoundOrExpired,
)
from gatehouse.service.notifications import NotificationDispatcher, redact_email
from gatehouse.service.tokens import TokenIssuer
from gatehouse.storage.directory import CredentialDirectory
from gatehouse.storage.models import OTPChallenge, OTPIssue, OTPResend, Principal, TokenPair
from gatehouse.storage.ttl_store import StoreUnavailable, TTLStore

logger = get_logger(__name__)

_MASK_PATTERN = re.compile(r"(.{2})(.*)(@.*)")


def mask_email(email: str) -> str:
    match = _MASK_PATTERN.fullmatch(email or "")
    if not match:
        return "***"
    return f"{match.group(1)}***{match.group(3)}"


def generate_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


class OTPChallengeManager:
    """Second login factor: short-lived emailed codes behind an opaque token.

    Attempt counting is a read-modify-write on a single key, so two
    concurrent wrong guesses on the same token may both be counted as the
    same attempt.
    """

    def __init__(
        self,
        store: TTLStore,
        dispatcher: NotificationDispatcher,
        directory: CredentialDirectory,
        tokens: TokenIssuer,
        *,
        ttl_seconds: int = 600,
        max_attempts: int = 3,
        max_resends: int = 3,
        extend_ttl_on_failure: bool = True,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.directory = directory
        self.tokens = tokens
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.max_resends = max_resends
        self.extend_ttl_on_failure = extend_ttl_on_failure

    @staticmethod
    def _key(token: str) -> str:
        return f"otp:{token}"

    async def _load(self, token: str) -> OTPChallenge:
        if not token:
            raise OTPSessionNotFoundOrExpired()
        try:
            raw = await self.store.get(self._key(token))
        except StoreUnavailable as exc:
            logger.error("otp_store_read_failed", error=str(exc))
            raise DependencyUnavailable() from exc
        if raw is None:
            raise OTPSessionNotFoundOrExpired()
        try:
            return OTPChallenge.from_record(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("otp_record_undecodable")
            raise OTPSessionNotFoundOrExpired() from None

    async def _save(self, token: str, challenge: OTPChallenge, ttl_seconds: int) -> None:
        try:
            await self.store.set(
                self._key(token), json.dumps(challenge.to_record()), ttl_seconds
            )
        except StoreUnavailable as exc:
            logger.error("otp_store_write_failed", error=str(exc))
            raise DependencyUnavailable() from exc

    async def _discard(self, token: str) -> None:
        try:
            await self.store.delete(self._key(token))
        except StoreUnavailable as exc:
            logger.error("otp_store_delete_failed", error=str(exc))
            raise DependencyUnavailable() from exc

    async def _dispatch(self, email: str, code: str, display_name: Optional[str]) -> bool:
        try:
            delivered = await self.dispatcher.send_code(email, code, display_name)
        except Exception as exc:
            logger.warning(
                "otp_dispatch_failed",
                to=redact_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.warning("otp_dispatch_failed", to=redact_email(email))
        return bool(delivered)

    async def issue(self, principal: Principal) -> OTPIssue:
        token = secrets.token_hex(32)
        challenge = OTPChallenge(
            user_id=principal.id,
            email=principal.email,
            otp=generate_code(),
            max_attempts=self.max_attempts,
        )
        await self._save(token, challenge, self.ttl_seconds)
        await self._dispatch(principal.email, challenge.otp, principal.display_name)
        logger.info("otp_issued", user_id=principal.id)
        return OTPIssue(
            token=token,
            masked_email=mask_email(principal.email),
            expires_in=self.ttl_seconds,
        )

    async def _ttl_after_failure(self, token: str) -> int:
        if self.extend_ttl_on_failure:
            return self.ttl_seconds
        try:
            remaining = await self.store.ttl(self._key(token))
        except StoreUnavailable as exc:
            raise DependencyUnavailable() from exc
        return remaining if remaining > 0 else 1

    async def verify(self, token: str, code: str) -> Tuple[Principal, TokenPair]:
        challenge = await self._load(token)

        if challenge.attempts >= challenge.max_attempts:
            await self._discard(token)
            logger.warning("otp_attempts_exhausted", user_id=challenge.user_id)
            raise OTPAttemptsExhausted()

        if not hmac.compare_digest(
            challenge.otp.encode(), str(code or "").strip().encode()
        ):
            challenge.attempts += 1
            await self._save(token, challenge, await self._ttl_after_failure(token))
            logger.warning(
                "otp_mismatch", user_id=challenge.user_id, attempts=challenge.attempts
            )
            raise OTPMismatch(challenge.max_attempts - challenge.attempts)

        principal = self.directory.get_by_id(challenge.user_id)
        if principal is None or not principal.is_active:
            await self._discard(token)
            raise AccountInactive("User not found or inactive")

        pair = self.tokens.issue(principal)
        await self._discard(token)
        logger.info("otp_verified", user_id=principal.id)
        return principal, pair

    async def resend(self, token: str) -> OTPResend:
        challenge = await self._load(token)
        if challenge.resend_count >= self.max_resends:
            logger.warning("otp_resend_exhausted", user_id=challenge.user_id)
            raise OTPResendExhausted()

        challenge.otp = generate_code()
        challenge.attempts = 0
        challenge.resend_count += 1
        challenge.last_resent = datetime.now(timezone.utc).isoformat()
        await self._save(token, challenge, self.ttl_seconds)

        principal = self.directory.get_by_id(challenge.user_id)
        display_name = principal.display_name if principal else None
        await self._dispatch(challenge.email, challenge.otp, display_name)
        logger.info(
            "otp_resent", user_id=challenge.user_id, resend_count=challenge.resend_count
        )
        return OTPResend(
            resend_count=challenge.resend_count,
            remaining_resends=self.max_resends - challenge.resend_count,
        )
