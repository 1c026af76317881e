from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from apitemplate.config import Settings
from apitemplate.logging import get_logger
from apitemplate.service import tokens
from apitemplate.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    RefreshTokenNotFoundError,
    StorageError,
    TokenIssuanceError,
)
from apitemplate.service.passwords import CredentialVerifier
from apitemplate.storage.errors import CacheError
from apitemplate.storage.models import User

logger = get_logger(__name__)

PRESENCE_SENTINEL = "online"


class UserRepository(Protocol):
    """User lookups the auth core depends on."""

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def update_user(
        self, user_id: int, *, password_hash: Optional[str] = None
    ) -> Optional[User]: ...


class SessionStore(Protocol):
    """Key-value cache with per-key expiry."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...


def refresh_key(refresh_token: str) -> str:
    return f"auth:refresh:{refresh_token}"


def presence_key(user_id: int) -> str:
    return f"user:{user_id}:online"


@dataclass
class AuthContext:
    user_id: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


@dataclass
class LoginResult:
    tokens: TokenPair
    user: User


class AuthService:
    """Login, refresh, logout and presence tracking over dual signed tokens.

    Access tokens are stateless. Refresh tokens are additionally registered in
    the session store; a refresh token is honoured only while its signature and
    expiry are valid AND its key is still present there.
    """

    def __init__(
        self,
        store: UserRepository,
        cache: SessionStore,
        settings: Settings,
        *,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.verifier = verifier or CredentialVerifier(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )
        self.logger = logger

    # -- token helpers ----------------------------------------------------

    def _issue(self, user_id: int, *, refresh: bool) -> str:
        secret = self.settings.jwt_refresh_secret if refresh else self.settings.jwt_access_secret
        ttl = (
            self.settings.refresh_token_ttl_seconds
            if refresh
            else self.settings.access_token_ttl_seconds
        )
        try:
            return tokens.issue_token(
                user_id,
                secret,
                ttl,
                token_type=tokens.REFRESH if refresh else tokens.ACCESS,
            )
        except (TypeError, ValueError) as exc:
            self.logger.error("token_issue_failed", error_type=type(exc).__name__)
            raise TokenIssuanceError() from exc

    async def _store_refresh_token(self, refresh_token: str, user_id: int) -> None:
        try:
            await self.cache.set(
                refresh_key(refresh_token),
                str(user_id),
                self.settings.refresh_token_ttl_seconds,
            )
        except CacheError as exc:
            self.logger.error(
                "refresh_token_store_failed", user_id=user_id, operation=exc.operation
            )
            raise StorageError() from exc

    async def _rehash_password(self, user: User, password: str) -> None:
        new_hash = await asyncio.to_thread(self.verifier.hash_password, password)
        self.store.update_user(user.id, password_hash=new_hash)
        self.logger.info("password_rehashed", user_id=user.id)

    # -- operations --------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        user = self.store.get_user_by_email(email)
        # Verify even when the user is missing so timing does not leak account existence.
        password_ok = await asyncio.to_thread(
            self.verifier.verify, password, user.password_hash if user else None
        )
        if not user or not password_ok:
            self.logger.info("login_failed")
            raise InvalidCredentialsError()
        if self.verifier.needs_rehash(user.password_hash):
            await self._rehash_password(user, password)

        access_token = self._issue(user.id, refresh=False)
        refresh_token = self._issue(user.id, refresh=True)
        # An unregistered refresh token could never be revoked, so it is not handed out.
        await self._store_refresh_token(refresh_token, user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(tokens=TokenPair(access_token, refresh_token), user=user)

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = tokens.validate_token(
                refresh_token, self.settings.jwt_refresh_secret, token_type=tokens.REFRESH
            )
            user_id = tokens.user_id_from_claims(claims)
        except tokens.TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=type(exc).__name__)
            raise InvalidRefreshTokenError() from exc

        try:
            stored = await self.cache.get(refresh_key(refresh_token))
        except CacheError as exc:
            self.logger.error("refresh_token_lookup_failed", operation=exc.operation)
            raise StorageError() from exc
        if stored is None:
            self.logger.info("refresh_token_not_found", user_id=user_id)
            raise RefreshTokenNotFoundError()
        if stored != str(user_id):
            self.logger.warning("refresh_token_owner_mismatch", user_id=user_id)
            raise InvalidRefreshTokenError()

        access_token = self._issue(user_id, refresh=False)
        if not self.settings.rotate_refresh_tokens:
            return TokenPair(access_token, refresh_token)

        new_refresh = self._issue(user_id, refresh=True)
        await self._store_refresh_token(new_refresh, user_id)
        try:
            await self.cache.delete(refresh_key(refresh_token))
        except CacheError as exc:
            self.logger.error("refresh_token_revoke_failed", operation=exc.operation)
            raise StorageError() from exc
        self.logger.info("refresh_token_rotated", user_id=user_id)
        return TokenPair(access_token, new_refresh)

    async def logout(self, refresh_token: str) -> None:
        """Revoke ``refresh_token``. Unknown or already revoked tokens are not an error."""
        try:
            await self.cache.delete(refresh_key(refresh_token))
        except CacheError as exc:
            self.logger.error("logout_failed", operation=exc.operation)
            raise StorageError() from exc
        self.logger.info("logout_succeeded")

    async def track_user_login(self, user_id: int) -> None:
        try:
            await self.cache.set(
                presence_key(user_id), PRESENCE_SENTINEL, self.settings.presence_ttl_seconds
            )
        except CacheError as exc:
            self.logger.error("presence_set_failed", user_id=user_id)
            raise StorageError() from exc

    async def track_user_logout(self, user_id: int) -> None:
        try:
            await self.cache.delete(presence_key(user_id))
        except CacheError as exc:
            self.logger.error("presence_clear_failed", user_id=user_id)
            raise StorageError() from exc

    async def is_user_online(self, user_id: int) -> bool:
        try:
            value = await self.cache.get(presence_key(user_id))
        except CacheError as exc:
            self.logger.error("presence_lookup_failed", user_id=user_id)
            raise StorageError() from exc
        return value == PRESENCE_SENTINEL

    def get_auth_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    # -- request authentication -------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate_access_token(self, token: str) -> AuthContext:
        try:
            claims = tokens.validate_token(
                token, self.settings.jwt_access_secret, token_type=tokens.ACCESS
            )
            user_id = tokens.user_id_from_claims(claims)
        except tokens.TokenError as exc:
            raise AuthenticationError("invalid or expired access token") from exc
        return AuthContext(user_id=user_id)

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header, or None when it is unusable."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            return self.authenticate_access_token(token)
        except AuthenticationError:
            return None


__all__ = [
    "AuthContext",
    "AuthService",
    "LoginResult",
    "SessionStore",
    "TokenPair",
    "UserRepository",
    "presence_key",
    "refresh_key",
]
