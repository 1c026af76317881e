from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from apitemplate.logging import get_logger
from apitemplate.storage.errors import ConstraintViolation
from apitemplate.storage.models import Permission, Role, User, _utcnow


class MemoryStore:
    """In-memory repository for users, roles and permissions.

    Records are kept normalized (user -> role ids, role -> permission ids) and
    hydrated into fresh dataclass copies on every read, so callers can never
    mutate stored state behind the store's back.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        self.user_roles: Dict[int, List[int]] = {}
        self.role_permissions: Dict[int, List[int]] = {}
        self._user_seq = 0
        self._role_seq = 0
        self._permission_seq = 0
        # RLock for all data operations; hydration re-enters it
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- hydration -------------------------------------------------------

    def _hydrate_role(self, role_id: int) -> Role:
        role = self.roles[role_id]
        perms = [
            replace(self.permissions[pid])
            for pid in self.role_permissions.get(role_id, [])
            if pid in self.permissions
        ]
        return replace(role, permissions=sorted(perms, key=lambda p: p.id))

    def _hydrate_user(self, user: User) -> User:
        roles = [
            self._hydrate_role(rid)
            for rid in self.user_roles.get(user.id, [])
            if rid in self.roles
        ]
        return replace(user, roles=sorted(roles, key=lambda r: r.id))

    def _email_taken(self, email: str, *, exclude_id: Optional[int] = None) -> bool:
        target = email.lower()
        return any(
            u.email.lower() == target and u.id != exclude_id for u in self.users.values()
        )

    # -- users -----------------------------------------------------------

    def create_user(self, email: str, name: str, password_hash: str) -> User:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self._user_seq += 1
            user = User(
                id=self._user_seq, email=email, name=name, password_hash=password_hash
            )
            self.users[user.id] = user
            self.user_roles[user.id] = []
            return self._hydrate_user(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._hydrate_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            target = email.lower()
            user = next((u for u in self.users.values() if u.email.lower() == target), None)
            return self._hydrate_user(user) if user else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            user = next((u for u in self.users.values() if u.reset_token == token), None)
            return self._hydrate_user(user) if user else None

    def list_users(self, *, offset: int = 0, limit: int = 10) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.id)
            return [self._hydrate_user(u) for u in ordered[offset : offset + limit]]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def update_user(
        self,
        user_id: int,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and self._email_taken(email, exclude_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if email is not None:
                user.email = email
            if name is not None:
                user.name = name
            if password_hash is not None:
                user.password_hash = password_hash
            user.updated_at = _utcnow()
            return self._hydrate_user(user)

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.user_roles.pop(user_id, None)
            return True

    def save_reset_token(self, user_id: int, token: str, expires_at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.reset_token = token
            user.reset_token_expires_at = expires_at
            user.updated_at = _utcnow()

    def update_password(self, user_id: int, password_hash: str) -> bool:
        """Store a new hash and clear any outstanding reset token."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.reset_token = None
            user.reset_token_expires_at = None
            user.updated_at = _utcnow()
            return True

    def set_user_roles(self, user_id: int, role_ids: Iterable[int]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            ids = _dedupe(role_ids)
            missing = [rid for rid in ids if rid not in self.roles]
            if missing:
                raise ConstraintViolation("unknown role", {"field": "role_ids", "ids": missing})
            self.user_roles[user_id] = ids
            return self._hydrate_user(user)

    # -- roles -----------------------------------------------------------

    def _role_name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        return any(r.name == name and r.id != exclude_id for r in self.roles.values())

    def create_role(self, name: str, permission_ids: Iterable[int] = ()) -> Role:
        with self._data_lock:
            if self._role_name_taken(name):
                raise ConstraintViolation("role already exists", {"field": "name"})
            ids = self._checked_permission_ids(permission_ids)
            self._role_seq += 1
            role = Role(id=self._role_seq, name=name)
            self.roles[role.id] = role
            self.role_permissions[role.id] = ids
            return self._hydrate_role(role.id)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            if role_id not in self.roles:
                return None
            return self._hydrate_role(role_id)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [self._hydrate_role(rid) for rid in sorted(self.roles)]

    def update_role(self, role_id: int, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if self._role_name_taken(name, exclude_id=role_id):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role.name = name
            role.updated_at = _utcnow()
            return self._hydrate_role(role_id)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.role_permissions.pop(role_id, None)
            for user_id, ids in self.user_roles.items():
                self.user_roles[user_id] = [rid for rid in ids if rid != role_id]
            return True

    def set_role_permissions(
        self, role_id: int, permission_ids: Iterable[int]
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            self.role_permissions[role_id] = self._checked_permission_ids(permission_ids)
            role.updated_at = _utcnow()
            return self._hydrate_role(role_id)

    # -- permissions -----------------------------------------------------

    def _checked_permission_ids(self, permission_ids: Iterable[int]) -> List[int]:
        ids = _dedupe(permission_ids)
        missing = [pid for pid in ids if pid not in self.permissions]
        if missing:
            raise ConstraintViolation(
                "unknown permission", {"field": "permission_ids", "ids": missing}
            )
        return ids

    def create_permission(self, name: str) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            self._permission_seq += 1
            perm = Permission(id=self._permission_seq, name=name)
            self.permissions[perm.id] = perm
            return replace(perm)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return [replace(self.permissions[pid]) for pid in sorted(self.permissions)]

    def delete_permission(self, permission_id: int) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            for role_id, ids in self.role_permissions.items():
                self.role_permissions[role_id] = [pid for pid in ids if pid != permission_id]
            return True


def _dedupe(ids: Iterable[int]) -> List[int]:
    seen: List[int] = []
    for value in ids:
        if value not in seen:
            seen.append(value)
    return seen


class MemoryCache:
    """Process-local session store with per-key expiry.

    Mirrors the RedisCache surface so the auth orchestrator can run without a
    live Redis. Expired keys are dropped lazily on access.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for _, exp in self._entries.values() if exp > now)


__all__ = ["MemoryStore", "MemoryCache"]
