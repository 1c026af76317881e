from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Permission:
    id: int
    name: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Role:
    id: int
    name: str
    permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class User:
    id: int
    email: str
    name: str
    password_hash: str
    reset_token: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    roles: List[Role] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def reset_token_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.reset_token or not self.reset_token_expires_at:
            return False
        current = now or _utcnow()
        expires_at = self.reset_token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > current


def merge_permissions(roles: List[Role]) -> List[Permission]:
    """Union of role permissions, first occurrence wins, ordered by id."""

    seen: dict[int, Permission] = {}
    for role in roles:
        for perm in role.permissions:
            seen.setdefault(perm.id, perm)
    return sorted(seen.values(), key=lambda p: p.id)
