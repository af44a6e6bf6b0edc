from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from gatehouse.logging import get_logger
from gatehouse.storage.models import ActivityEntry, Principal
from gatehouse.storage.ttl_store import StoreUnavailable, TTLStore

logger = get_logger(__name__)

HISTORY_LIMIT = 10
HISTORY_TTL_SECONDS = 7 * 24 * 60 * 60


def risk_level(indicators: List[str]) -> str:
    if len(indicators) > 2:
        return "high"
    if indicators:
        return "medium"
    return "low"


class SessionActivityMonitor:
    """Advisory anomaly flags for authenticated requests.

    Never blocks a request: store errors are logged and the computed entry is
    still returned.
    """

    def __init__(self, store: TTLStore, *, timezone_name: str = "UTC") -> None:
        self.store = store
        self.tz = ZoneInfo(timezone_name)

    @staticmethod
    def _key(user_id: str) -> str:
        return f"activity:{user_id}"

    async def _history(self, user_id: str) -> List[ActivityEntry]:
        raw = await self.store.get(self._key(user_id))
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            logger.warning("activity_history_undecodable", user_id=user_id)
            return []
        if not isinstance(items, list):
            return []
        return [ActivityEntry.from_dict(item) for item in items if isinstance(item, dict)]

    def _indicators(
        self, history: List[ActivityEntry], ip: str, user_agent: str, now: datetime
    ) -> List[str]:
        indicators: List[str] = []
        last_hour = [
            e for e in history if e.observed_at and now - e.observed_at <= timedelta(hours=1)
        ]
        last_day = [
            e for e in history if e.observed_at and now - e.observed_at <= timedelta(hours=24)
        ]
        if last_hour and all(e.ip != ip for e in last_hour):
            indicators.append("different_ip")
        if last_day and all(e.user_agent != user_agent for e in last_day):
            indicators.append("different_device")
        local_hour = now.astimezone(self.tz).hour
        if local_hour < 6 or local_hour > 23:
            indicators.append("unusual_time")
        return indicators

    async def record(
        self,
        principal: Principal,
        ip: str,
        user_agent: str,
        now: Optional[datetime] = None,
    ) -> ActivityEntry:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        try:
            history = await self._history(principal.id)
        except StoreUnavailable as exc:
            logger.warning("activity_store_unavailable", op="read", error=str(exc))
            history = []

        indicators = self._indicators(history, ip, user_agent, now)
        entry = ActivityEntry(
            ip=ip,
            user_agent=user_agent,
            timestamp=now.isoformat(),
            flagged=bool(indicators),
            indicators=indicators,
            risk_level=risk_level(indicators),
        )
        if entry.flagged:
            logger.warning(
                "suspicious_session_activity",
                user_id=principal.id,
                ip=ip,
                indicators=indicators,
                risk_level=entry.risk_level,
            )

        updated = [entry] + history
        try:
            await self.store.set(
                self._key(principal.id),
                json.dumps([e.to_dict() for e in updated[:HISTORY_LIMIT]]),
                HISTORY_TTL_SECONDS,
            )
        except StoreUnavailable as exc:
            logger.warning("activity_store_unavailable", op="write", error=str(exc))
        return entry

    async def recent(self, user_id: str) -> List[ActivityEntry]:
        try:
            return await self._history(user_id)
        except StoreUnavailable as exc:
            logger.warning("activity_store_unavailable", op="read", error=str(exc))
            return []
