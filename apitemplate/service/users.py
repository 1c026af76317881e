from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from apitemplate.config import Settings
from apitemplate.logging import get_logger
from apitemplate.service.errors import ConflictError, NotFoundError, ValidationError
from apitemplate.service.passwords import CredentialVerifier
from apitemplate.storage.errors import ConstraintViolation
from apitemplate.storage.models import Permission, User, merge_permissions

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 16


class UserService:
    """User CRUD, role assignment and the password reset flow."""

    def __init__(self, store, verifier: CredentialVerifier, settings: Settings) -> None:
        self.store = store
        self.verifier = verifier
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_user(self, name: str, email: str, password: str) -> User:
        password_hash = self.verifier.hash_password(password)
        try:
            user = self.store.create_user(email, name, password_hash)
        except ConstraintViolation as exc:
            raise ConflictError("email already taken", detail=exc.detail) from exc
        logger.info("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def list_users(self, *, page: int, limit: int) -> Tuple[List[User], int]:
        offset = (page - 1) * limit
        return self.store.list_users(offset=offset, limit=limit), self.store.count_users()

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        # An empty password means "keep the current one".
        password_hash = self.verifier.hash_password(password) if password else None
        try:
            user = self.store.update_user(
                user_id, email=email, name=name, password_hash=password_hash
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already taken", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_updated", user_id=user_id, password_changed=bool(password_hash))
        return user

    def delete_user(self, user_id: int) -> None:
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found")
        logger.info("user_deleted", user_id=user_id)

    def get_permissions(self, user_id: int) -> List[Permission]:
        return merge_permissions(self.get_user(user_id).roles)

    def set_roles(self, user_id: int, role_ids: Iterable[int]) -> User:
        try:
            user = self.store.set_user_roles(user_id, list(role_ids))
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_roles_updated", user_id=user_id, role_ids=[r.id for r in user.roles])
        return user

    # password reset

    def generate_reset_token(self, email: str) -> Optional[Tuple[User, str]]:
        """Save a fresh reset token for ``email``; None when no such user exists."""
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email")
            return None
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        expires_at = self._now() + timedelta(minutes=self.settings.reset_token_expiry_minutes)
        self.store.save_reset_token(user.id, token, expires_at)
        logger.info("password_reset_token_issued", user_id=user.id)
        return user, token

    def reset_password(self, token: str, new_password: str) -> User:
        user = self.store.get_user_by_reset_token(token)
        if not user or not user.reset_token_valid(self._now()):
            raise ValidationError("invalid or expired token")
        self.store.update_password(user.id, self.verifier.hash_password(new_password))
        logger.info("password_reset_completed", user_id=user.id)
        return user
