from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import RateLimited
from gatehouse.storage.models import RateDecision
from gatehouse.storage.ttl_store import StoreUnavailable, TTLStore

logger = get_logger(__name__)

PENALTY_TTL_SECONDS = 24 * 60 * 60
PENALTY_LIMIT_STEP = 10
PENALTY_WINDOW_STEP_SECONDS = 60


@dataclass(frozen=True)
class RatePolicy:
    name: str
    limit: int
    window_seconds: int
    key_prefix: str
    message: str = "Too many requests, please try again later."


@dataclass(frozen=True)
class SpeedPolicy:
    name: str
    window_seconds: int
    delay_after: int
    delay_ms: int
    max_delay_ms: int
    key_prefix: str = "speed_limit"


@dataclass(frozen=True)
class Caller:
    """Who is asking; consulted against the whitelist before any check."""

    ip: str
    user_id: Optional[str] = None
    role: Optional[str] = None


@dataclass(frozen=True)
class AbuseWhitelist:
    ips: FrozenSet[str] = field(default_factory=frozenset)
    user_ids: FrozenSet[str] = field(default_factory=frozenset)
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        ips: Iterable[str] = (),
        user_ids: Iterable[str] = (),
        roles: Iterable[str] = (),
    ) -> "AbuseWhitelist":
        return cls(frozenset(ips), frozenset(user_ids), frozenset(roles))

    def allows(self, caller: Optional[Caller]) -> bool:
        if caller is None:
            return False
        return (
            caller.ip in self.ips
            or (caller.user_id is not None and caller.user_id in self.user_ids)
            or (caller.role is not None and caller.role in self.roles)
        )


_FIFTEEN_MINUTES = 15 * 60
_HOUR = 60 * 60

DEFAULT_POLICIES: Dict[str, RatePolicy] = {
    "general": RatePolicy("general", 1000, _FIFTEEN_MINUTES, "rate_limit"),
    "auth": RatePolicy(
        "auth", 10, _FIFTEEN_MINUTES, "auth_limit",
        "Too many authentication attempts, please try again later.",
    ),
    "login": RatePolicy(
        "login", 5, _FIFTEEN_MINUTES, "login_limit",
        "Too many login attempts, please try again later.",
    ),
    "otp_verify": RatePolicy(
        "otp_verify", 10, _FIFTEEN_MINUTES, "otp_verify_limit",
        "Too many verification attempts, please try again later.",
    ),
    "otp_resend": RatePolicy(
        "otp_resend", 5, _FIFTEEN_MINUTES, "otp_resend_limit",
        "Too many resend requests, please try again later.",
    ),
    "password_reset": RatePolicy(
        "password_reset", 3, _HOUR, "password_reset_limit",
        "Too many password reset attempts, please try again later.",
    ),
    "register": RatePolicy(
        "register", 5, _HOUR, "register_limit",
        "Too many registration attempts, please try again later.",
    ),
    "upload": RatePolicy("upload", 50, _HOUR, "upload_limit", "Too many uploads, please try again later."),
    "comment": RatePolicy("comment", 5, 60, "comment_limit", "Too many comments, please slow down."),
    "search": RatePolicy("search", 30, 60, "search_limit", "Too many search requests, please slow down."),
    "email": RatePolicy("email", 10, _HOUR, "email_limit", "Too many emails sent, please try again later."),
    "api_key": RatePolicy(
        "api_key", 3, 24 * _HOUR, "api_key_limit",
        "Too many API key requests, please try again later.",
    ),
    "suspicious": RatePolicy(
        "suspicious", 200, 5 * 60, "suspicious",
        "Suspicious activity detected. Please try again later.",
    ),
}

ROLE_LIMITS: Dict[str, int] = {
    "admin": 10000,
    "editor": 5000,
    "journalist": 2000,
    "user": 1000,
    "anonymous": 100,
}

SPEED_POLICIES: Dict[str, SpeedPolicy] = {
    "general": SpeedPolicy("general", _FIFTEEN_MINUTES, 100, 500, 10000),
    "api": SpeedPolicy("api", _FIFTEEN_MINUTES, 200, 250, 5000),
    "search": SpeedPolicy("search", 60, 10, 1000, 5000),
}


def role_policy(role: Optional[str]) -> RatePolicy:
    name = role if role in ROLE_LIMITS else "anonymous"
    return RatePolicy(
        f"role_{name}",
        ROLE_LIMITS[name],
        _FIFTEEN_MINUTES,
        f"role_limit:{name}",
        f"Rate limit exceeded for {name} role.",
    )


def _unlimited(policy: RatePolicy) -> RateDecision:
    return RateDecision(
        limit=policy.limit,
        remaining=policy.limit,
        reset_seconds=policy.window_seconds,
        skipped=True,
    )


class AbuseGuard:
    """Fixed-window rate limits, penalties and slow-downs over the shared store.

    Every entry point fails open: if the store is unreachable the request is
    allowed and the outage is logged.
    """

    def __init__(
        self,
        store: TTLStore,
        *,
        whitelist: Optional[AbuseWhitelist] = None,
        policies: Optional[Mapping[str, RatePolicy]] = None,
    ) -> None:
        self.store = store
        self.whitelist = whitelist or AbuseWhitelist()
        self.policies: Dict[str, RatePolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)

    def policy(self, name: str) -> RatePolicy:
        return self.policies[name]

    def _whitelisted(self, policy_name: str, caller: Optional[Caller]) -> bool:
        if self.whitelist.allows(caller):
            logger.debug(
                "rate_limit_whitelisted",
                policy=policy_name,
                ip=caller.ip,
                user_id=caller.user_id,
                role=caller.role,
            )
            return True
        return False

    async def _retry_after(self, key: str, window_seconds: int) -> int:
        remaining = await self.store.ttl(key)
        if remaining < 0:
            remaining = window_seconds
        return max(1, min(remaining, window_seconds))

    async def _hit(self, policy: RatePolicy, key: str) -> RateDecision:
        count = await self.store.increment(key, policy.window_seconds)
        if count > policy.limit:
            retry_after = await self._retry_after(key, policy.window_seconds)
            logger.warning(
                "rate_limit_exceeded",
                policy=policy.name,
                key=key,
                count=count,
                limit=policy.limit,
                retry_after=retry_after,
            )
            raise RateLimited(retry_after, policy.message)
        reset = await self.store.ttl(key)
        return RateDecision(
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_seconds=reset if reset >= 0 else policy.window_seconds,
        )

    async def check(
        self, policy: RatePolicy, identity: str, *, caller: Optional[Caller] = None
    ) -> RateDecision:
        """Flat cap: reject once the window holds more than ``policy.limit`` hits."""
        if self._whitelisted(policy.name, caller):
            return _unlimited(policy)
        key = f"{policy.key_prefix}:{identity}"
        try:
            return await self._hit(policy, key)
        except StoreUnavailable as exc:
            logger.warning(
                "abuse_guard_store_unavailable", policy=policy.name, error=str(exc)
            )
            return _unlimited(policy)

    async def check_role(
        self, identity: str, role: Optional[str], *, caller: Optional[Caller] = None
    ) -> RateDecision:
        return await self.check(role_policy(role), identity, caller=caller)

    async def check_suspicious(self, ip: str, *, caller: Optional[Caller] = None) -> RateDecision:
        try:
            return await self.check(self.policies["suspicious"], ip, caller=caller)
        except RateLimited:
            logger.error("suspicious_activity_detected", ip=ip)
            raise

    async def check_method(
        self,
        method: str,
        identity: str,
        method_policies: Mapping[str, RatePolicy],
        *,
        caller: Optional[Caller] = None,
    ) -> Optional[RateDecision]:
        policy = method_policies.get(method.lower()) or method_policies.get("default")
        if policy is None:
            return None
        return await self.check(policy, identity, caller=caller)

    async def penalty_level(self, policy: RatePolicy, identity: str) -> int:
        raw = await self.store.get(f"penalty:{policy.key_prefix}:{identity}")
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    @staticmethod
    def penalized(policy: RatePolicy, level: int) -> RatePolicy:
        if level <= 0:
            return policy
        return replace(
            policy,
            limit=max(1, policy.limit - PENALTY_LIMIT_STEP * level),
            window_seconds=policy.window_seconds + PENALTY_WINDOW_STEP_SECONDS * level,
        )

    async def check_progressive(
        self, policy: RatePolicy, identity: str, *, caller: Optional[Caller] = None
    ) -> RateDecision:
        """Flat cap that tightens each time the same key is caught over it.

        The identity keeps one bucket across levels, so hits over the limit
        carry into the tightened policy and the bucket's lifetime is stretched
        to the penalised window on every violation.
        """
        if self._whitelisted(policy.name, caller):
            return _unlimited(policy)
        key = f"{policy.key_prefix}:{identity}"
        try:
            level = await self.penalty_level(policy, identity)
            effective = self.penalized(policy, level)
            count = await self.store.increment(key, effective.window_seconds)
            if count <= effective.limit:
                reset = await self.store.ttl(key)
                return RateDecision(
                    limit=effective.limit,
                    remaining=max(0, effective.limit - count),
                    reset_seconds=reset if reset >= 0 else effective.window_seconds,
                )
            new_level = await self.store.increment(
                f"penalty:{policy.key_prefix}:{identity}", PENALTY_TTL_SECONDS
            )
            tightened = self.penalized(policy, new_level)
            await self.store.expire(key, tightened.window_seconds)
            retry_after = await self._retry_after(key, tightened.window_seconds)
        except StoreUnavailable as exc:
            logger.warning(
                "abuse_guard_store_unavailable", policy=policy.name, error=str(exc)
            )
            return _unlimited(policy)

        logger.warning(
            "rate_limit_penalty_applied",
            policy=policy.name,
            identity=identity,
            count=count,
            limit=effective.limit,
            penalty_level=new_level,
            retry_after=retry_after,
        )
        raise RateLimited(retry_after, policy.message, penalty_level=new_level)

    async def delay_for(
        self, policy: SpeedPolicy, identity: str, *, caller: Optional[Caller] = None
    ) -> float:
        """Slow-down delay in seconds; never rejects."""
        if self._whitelisted(policy.name, caller):
            return 0.0
        try:
            count = await self.store.increment(
                f"{policy.key_prefix}:{policy.name}:{identity}", policy.window_seconds
            )
        except StoreUnavailable as exc:
            logger.warning(
                "abuse_guard_store_unavailable", policy=policy.name, error=str(exc)
            )
            return 0.0
        if count <= policy.delay_after:
            return 0.0
        delay_ms = min((count - policy.delay_after) * policy.delay_ms, policy.max_delay_ms)
        return delay_ms / 1000.0
