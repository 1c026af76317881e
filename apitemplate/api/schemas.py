from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from apitemplate.logging import get_correlation_id
from apitemplate.storage.models import Permission, Role, User

MAX_ID_LIST = 1000


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("name must not be empty")
    if len(normalized) > 100:
        raise ValueError("name must be at most 100 characters")
    return normalized


# auth


class LoginRequest(BaseModel):
    email: str
    # Existing accounts may predate the strength rules, so only bound the length.
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# users


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    # Empty string leaves the password unchanged
    password: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_update_password(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return _validate_password_strength(value)


class UserRolesRequest(BaseModel):
    role_ids: List[int] = Field(default_factory=list, max_length=MAX_ID_LIST)


class PermissionResponse(BaseModel):
    id: int
    name: str
    created_at: datetime

    @classmethod
    def from_model(cls, permission: Permission) -> "PermissionResponse":
        return cls(id=permission.id, name=permission.name, created_at=permission.created_at)


class RoleResponse(BaseModel):
    id: int
    name: str
    permissions: List[PermissionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            permissions=[PermissionResponse.from_model(p) for p in role.permissions],
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class UserResponse(BaseModel):
    """Public view of a user; never carries the password hash or reset token."""

    id: int
    name: str
    email: str
    roles: List[RoleResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            roles=[RoleResponse.from_model(r) for r in user.roles],
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: Optional[UserResponse] = None


class PresenceResponse(BaseModel):
    user_id: int
    online: bool


# roles and permissions


class RoleCreateRequest(BaseModel):
    name: str
    permission_ids: List[int] = Field(default_factory=list, max_length=MAX_ID_LIST)

    @field_validator("name")
    @classmethod
    def _validate_role_name(cls, value: str) -> str:
        return _validate_name(value)


class RoleUpdateRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_role_name(cls, value: str) -> str:
        return _validate_name(value)


class RolePermissionsRequest(BaseModel):
    permission_ids: List[int] = Field(default_factory=list, max_length=MAX_ID_LIST)


class PermissionCreateRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_permission_name(cls, value: str) -> str:
        return _validate_name(value)
