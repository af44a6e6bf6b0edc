import json
from unittest.mock import AsyncMock

import pytest

from gatehouse.service.errors import (
    AccountInactive,
    DependencyUnavailable,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from gatehouse.service.tokens import (
    TokenIssuer,
    _decode_segment,
    _encode_segment,
    blacklist_key,
    decode_jwt,
    encode_jwt,
    extract_bearer,
)
from gatehouse.storage.directory import MemoryDirectory
from gatehouse.storage.ttl_store import MemoryTTLStore, StoreUnavailable

ACCESS_SECRET = "access-secret-for-unit-tests-0123456789"
REFRESH_SECRET = "refresh-secret-for-unit-tests-0123456789"


@pytest.fixture
def directory():
    directory = MemoryDirectory()
    directory.add_user("a@b.com", "Corr3ct#Horse", user_id="u-1", role="journalist")
    return directory


@pytest.fixture
def store(clock):
    return MemoryTTLStore(clock=clock)


@pytest.fixture
def issuer(directory, store, clock):
    return TokenIssuer(
        directory,
        store,
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        clock=clock,
    )


class TestJwtCodec:
    """HS256 encode/decode checks."""

    def test_rejects_non_hs256_header(self):
        token = encode_jwt({"id": "u-1", "exp": 9999999999}, ACCESS_SECRET)
        _, payload, sig = token.split(".")
        header = _encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        with pytest.raises(TokenInvalid) as exc_info:
            decode_jwt(f"{header}.{payload}.{sig}", ACCESS_SECRET)
        assert exc_info.value.detail["reason"] == "algorithm"

    def test_rejects_wrong_secret(self):
        token = encode_jwt({"id": "u-1", "exp": 9999999999}, ACCESS_SECRET)
        with pytest.raises(TokenInvalid):
            decode_jwt(token, REFRESH_SECRET)

    def test_rejects_malformed(self):
        for bad in ("", "abc", "a.b", "a.b.c.d", "!!!.???.###"):
            with pytest.raises(TokenInvalid):
                decode_jwt(bad, ACCESS_SECRET)

    def test_payload_round_trips(self):
        token = encode_jwt({"id": "u-1", "exp": 1}, ACCESS_SECRET)
        assert json.loads(_decode_segment(token.split(".")[1])) == {"id": "u-1", "exp": 1}

    def test_extract_bearer(self):
        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("bearer  abc ") == "abc"
        assert extract_bearer("Basic abc") is None
        assert extract_bearer(None) is None


class TestTokenIssuer:
    """Issue, refresh, revoke and verify."""

    def test_secrets_must_differ(self, directory, store):
        with pytest.raises(ValueError):
            TokenIssuer(directory, store, access_secret="same", refresh_secret="same")

    async def test_issue_and_verify_access(self, issuer):
        principal = issuer.directory.get_by_id("u-1")
        pair = issuer.issue(principal)
        assert pair.access_expires_in == 24 * 3600
        assert pair.refresh_expires_in == 7 * 24 * 3600
        verified = await issuer.verify_access(pair.access_token)
        assert verified.id == "u-1"
        claims = decode_jwt(pair.access_token, ACCESS_SECRET)
        assert claims["role"] == "journalist"
        assert claims["type"] == "access"

    async def test_refresh_token_cannot_be_used_as_access(self, issuer):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        with pytest.raises(TokenInvalid):
            await issuer.verify_access(pair.refresh_token)

    async def test_access_token_cannot_refresh(self, issuer):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        with pytest.raises(TokenInvalid):
            await issuer.refresh(pair.access_token)

    async def test_wrong_type_with_refresh_secret(self, issuer, clock):
        token = encode_jwt(
            {"id": "u-1", "type": "access", "exp": clock() + 60}, REFRESH_SECRET
        )
        with pytest.raises(TokenInvalid) as exc_info:
            await issuer.refresh(token)
        assert exc_info.value.detail["reason"] == "wrong_type"

    async def test_expired_access_token(self, issuer, clock):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        clock.advance(24 * 3600)
        with pytest.raises(TokenExpired):
            await issuer.verify_access(pair.access_token)

    async def test_refresh_mints_new_pair_and_old_stays_valid(self, issuer, clock):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        clock.advance(60)
        principal, new_pair = await issuer.refresh(pair.refresh_token)
        assert principal.id == "u-1"
        assert new_pair.refresh_token != pair.refresh_token
        # Rotation does not invalidate the previous refresh token
        _, again = await issuer.refresh(pair.refresh_token)
        assert again.access_token

    async def test_rotation_revocation_when_enabled(self, issuer):
        issuer.revoke_rotated_refresh_tokens = True
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        await issuer.refresh(pair.refresh_token)
        with pytest.raises(TokenRevoked):
            await issuer.refresh(pair.refresh_token)

    async def test_refresh_inactive_user(self, issuer):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        issuer.directory.set_active("u-1", False)
        with pytest.raises(AccountInactive):
            await issuer.refresh(pair.refresh_token)

    async def test_revoked_token_fails_verification(self, issuer, store, clock):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        clock.advance(3600)
        assert await issuer.revoke(pair.access_token) is True
        assert await store.ttl(blacklist_key(pair.access_token)) == 23 * 3600
        with pytest.raises(TokenRevoked):
            await issuer.verify_access(pair.access_token)

    async def test_revoke_is_noop_for_garbage_and_expired(self, issuer, clock):
        assert await issuer.revoke("not-a-token") is False
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        clock.advance(25 * 3600)
        assert await issuer.revoke(pair.access_token) is False

    async def test_revoke_swallows_store_outage(self, issuer, store):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        store.set = AsyncMock(side_effect=StoreUnavailable("down"))
        assert await issuer.revoke(pair.access_token) is False

    async def test_blacklist_check_fails_closed(self, issuer, store):
        pair = issuer.issue(issuer.directory.get_by_id("u-1"))
        store.get = AsyncMock(side_effect=StoreUnavailable("down"))
        with pytest.raises(DependencyUnavailable):
            await issuer.verify_access(pair.access_token)
