from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger
from gatehouse.storage.models import Principal

logger = get_logger(__name__)

# Shared so every directory verifies the same argon2id parameters
password_hasher = PasswordHasher(type=Type.ID)


class CredentialDirectory(Protocol):
    """Read-only view of user accounts owned by the rest of the platform."""

    def find_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def get_by_id(self, user_id: str) -> Optional[Principal]: ...

    def verify_password(self, principal: Principal, password: str) -> bool: ...


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


def hash_password(password: str) -> str:
    return password_hasher.hash(password)


def check_password_hash(stored_hash: Optional[str], password: str, *, user_id: str) -> bool:
    if not stored_hash:
        logger.warning("password_record_missing", user_id=user_id)
        return False
    try:
        return password_hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_unusable", user_id=user_id)
        return False


class MemoryDirectory:
    """Directory held in process memory, for tests and single-node development."""

    def __init__(self) -> None:
        self._users: Dict[str, Principal] = {}
        self._by_email: Dict[str, str] = {}
        self._password_hashes: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add_user(
        self,
        email: str,
        password: str,
        *,
        role: str = "user",
        is_active: bool = True,
        display_name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Principal:
        principal = Principal(
            id=user_id or str(uuid.uuid4()),
            email=normalize_identifier(email),
            role=role,
            is_active=is_active,
            display_name=display_name,
        )
        digest = hash_password(password)
        with self._lock:
            if principal.email in self._by_email:
                raise ValueError(f"user already exists: {principal.email}")
            self._users[principal.id] = principal
            self._by_email[principal.email] = principal.id
            self._password_hashes[principal.id] = digest
        return principal

    def set_active(self, user_id: str, is_active: bool) -> None:
        with self._lock:
            principal = self._users.get(user_id)
            if principal is None:
                raise KeyError(user_id)
            principal.is_active = is_active

    def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._lock:
            user_id = self._by_email.get(normalize_identifier(identifier))
            return self._users.get(user_id) if user_id else None

    def get_by_id(self, user_id: str) -> Optional[Principal]:
        with self._lock:
            return self._users.get(user_id)

    def verify_password(self, principal: Principal, password: str) -> bool:
        with self._lock:
            stored = self._password_hashes.get(principal.id)
        return check_password_hash(stored, password, user_id=principal.id)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._users)
