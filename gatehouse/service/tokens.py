from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable, Optional, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AccountInactive,
    DependencyUnavailable,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from gatehouse.storage.directory import CredentialDirectory
from gatehouse.storage.models import Principal, TokenPair
from gatehouse.storage.ttl_store import StoreUnavailable, TTLStore

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def decode_jwt(token: str, secret: str) -> dict[str, Any]:
    """Check structure, algorithm and signature; expiry is left to the caller."""
    try:
        header_b64, payload_b64, sig_b64 = (token or "").split(".")
    except ValueError:
        raise TokenInvalid(detail={"reason": "malformed"}) from None

    try:
        header = json.loads(_decode_segment(header_b64))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        logger.warning("jwt_header_decode_failed")
        raise TokenInvalid(detail={"reason": "malformed"}) from None
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning(
            "jwt_invalid_algorithm",
            alg=header.get("alg") if isinstance(header, dict) else None,
        )
        raise TokenInvalid(detail={"reason": "algorithm"})

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        raise TokenInvalid(detail={"reason": "signature"})

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        raise TokenInvalid(detail={"reason": "malformed"}) from None
    if not isinstance(payload, dict):
        raise TokenInvalid(detail={"reason": "malformed"})
    return payload


def _expiry(payload: dict[str, Any]) -> float:
    try:
        return float(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise TokenInvalid(detail={"reason": "missing_exp"}) from None


def blacklist_key(token: str) -> str:
    return f"blacklist:{hashlib.sha256(token.encode()).hexdigest()}"


class TokenIssuer:
    """Mints and checks the access/refresh JWT pair.

    Access and refresh tokens are signed with different secrets so one can
    never be replayed as the other even if the ``type`` claim were ignored.
    """

    def __init__(
        self,
        directory: CredentialDirectory,
        store: TTLStore,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 24 * 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        revoke_rotated_refresh_tokens: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self.directory = directory
        self.store = store
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.revoke_rotated_refresh_tokens = revoke_rotated_refresh_tokens
        self._clock = clock

    def issue(self, principal: Principal) -> TokenPair:
        now = int(self._clock())
        access_claims = {
            "id": principal.id,
            "sub": principal.id,
            "email": principal.email,
            "role": principal.role,
            "type": "access",
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        refresh_claims = {
            "id": principal.id,
            "sub": principal.id,
            "type": "refresh",
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
            "jti": secrets.token_hex(16),
        }
        return TokenPair(
            access_token=encode_jwt(access_claims, self._access_secret),
            refresh_token=encode_jwt(refresh_claims, self._refresh_secret),
            access_expires_in=self.access_ttl_seconds,
            refresh_expires_in=self.refresh_ttl_seconds,
        )

    def _decode_checked(self, token: str, secret: str, expected_type: str) -> dict[str, Any]:
        payload = decode_jwt(token, secret)
        if _expiry(payload) <= self._clock():
            raise TokenExpired()
        if payload.get("type") != expected_type:
            logger.warning(
                "jwt_wrong_type", expected=expected_type, got=payload.get("type")
            )
            raise TokenInvalid(detail={"reason": "wrong_type"})
        return payload

    def _active_principal(self, payload: dict[str, Any]) -> Principal:
        user_id = payload.get("id") or payload.get("sub")
        principal = self.directory.get_by_id(str(user_id)) if user_id else None
        if principal is None or not principal.is_active:
            logger.warning("token_principal_unavailable", user_id=user_id)
            raise AccountInactive("User not found or inactive")
        return principal

    async def _is_blacklisted(self, token: str) -> bool:
        try:
            return await self.store.get(blacklist_key(token)) is not None
        except StoreUnavailable as exc:
            logger.error("token_blacklist_check_failed", error=str(exc))
            raise DependencyUnavailable("Unable to verify token status") from exc

    async def _blacklist(self, token: str, exp: float) -> bool:
        remaining = int(exp - self._clock())
        if remaining <= 0:
            return False
        try:
            await self.store.set(blacklist_key(token), "1", remaining)
        except StoreUnavailable as exc:
            logger.warning("token_blacklist_write_failed", error=str(exc))
            return False
        return True

    async def refresh(self, refresh_token: str) -> Tuple[Principal, TokenPair]:
        payload = self._decode_checked(refresh_token, self._refresh_secret, "refresh")
        if self.revoke_rotated_refresh_tokens and await self._is_blacklisted(refresh_token):
            raise TokenRevoked()
        principal = self._active_principal(payload)
        pair = self.issue(principal)
        if self.revoke_rotated_refresh_tokens:
            await self._blacklist(refresh_token, _expiry(payload))
        logger.info("token_refreshed", user_id=principal.id)
        return principal, pair

    async def revoke(self, access_token: str) -> bool:
        """Blacklist an access token for the rest of its lifetime.

        Returns whether an entry was written. Undecodable or already expired
        tokens, and store outages, are no-ops so logout stays idempotent.
        """
        try:
            payload = decode_jwt(access_token, self._access_secret)
            exp = _expiry(payload)
        except TokenInvalid:
            return False
        revoked = await self._blacklist(access_token, exp)
        if revoked:
            logger.info("access_token_revoked", user_id=payload.get("id"))
        return revoked

    async def verify_access(self, access_token: str) -> Principal:
        payload = self._decode_checked(access_token, self._access_secret, "access")
        if await self._is_blacklisted(access_token):
            raise TokenRevoked()
        return self._active_principal(payload)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
