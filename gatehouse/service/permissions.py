from __future__ import annotations

from typing import Dict, List, Optional

# Action verbs the content services check against a caller's role
ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "admin": ["create", "read", "update", "delete", "approve", "manage"],
    "editor": ["create", "read", "update", "delete", "approve"],
    "journalist": ["create", "read", "update_own"],
    "user": ["read", "comment"],
}


def permissions_for(role: Optional[str]) -> List[str]:
    """Return a copy of the action list granted to ``role``; unknown roles get none."""
    return list(ROLE_PERMISSIONS.get(role or "", []))


def can_perform(
    role: Optional[str],
    action: str,
    *,
    actor_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> bool:
    granted = permissions_for(role)
    if action in granted:
        return True
    # Journalists may update resources they authored
    return (
        action == "update"
        and "update_own" in granted
        and actor_id is not None
        and actor_id == owner_id
    )
