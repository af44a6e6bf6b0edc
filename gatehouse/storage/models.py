from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    display_name: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "isActive": self.is_active,
            "displayName": self.display_name,
        }


@dataclass
class OTPChallenge:
    """Server-side state behind an opaque OTP token.

    Serialized with the camelCase keys the challenge record has always used so
    records written by other services sharing the store stay readable.
    """

    user_id: str
    email: str
    otp: str
    attempts: int = 0
    max_attempts: int = 3
    resend_count: int = 0
    created_at: str = field(default_factory=lambda: _utcnow().isoformat())
    last_resent: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "userId": self.user_id,
            "email": self.email,
            "otp": self.otp,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "resendCount": self.resend_count,
            "createdAt": self.created_at,
        }
        if self.last_resent:
            record["lastResent"] = self.last_resent
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "OTPChallenge":
        return cls(
            user_id=str(record["userId"]),
            email=str(record["email"]),
            otp=str(record["otp"]),
            attempts=int(record.get("attempts", 0)),
            max_attempts=int(record.get("maxAttempts", 3)),
            resend_count=int(record.get("resendCount", 0)),
            created_at=str(record.get("createdAt") or _utcnow().isoformat()),
            last_resent=record.get("lastResent"),
        )


@dataclass
class OTPIssue:
    token: str
    masked_email: str
    expires_in: int


@dataclass
class OTPResend:
    resend_count: int
    remaining_resends: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int


@dataclass
class RateDecision:
    """Outcome of an allowed rate check, used for X-RateLimit-* headers."""

    limit: int
    remaining: int
    reset_seconds: int
    skipped: bool = False


@dataclass
class ActivityEntry:
    ip: str
    user_agent: str
    timestamp: str
    flagged: bool = False
    indicators: List[str] = field(default_factory=list)
    risk_level: str = "low"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityEntry":
        return cls(
            ip=str(data.get("ip", "")),
            user_agent=str(data.get("user_agent", "")),
            timestamp=str(data.get("timestamp", "")),
            flagged=bool(data.get("flagged", False)),
            indicators=list(data.get("indicators") or []),
            risk_level=str(data.get("risk_level", "low")),
        )

    @property
    def observed_at(self) -> Optional[datetime]:
        try:
            parsed = datetime.fromisoformat(self.timestamp)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
