from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from apitemplate.logging import get_logger

logger = get_logger(__name__)

# Memory cost is KiB; argon2 rejects anything below 8 * parallelism.
DEFAULT_TIME_COST = 3
DEFAULT_MEMORY_COST = 65536
DEFAULT_PARALLELISM = 4


class CredentialVerifier:
    """Salted argon2id hashing with a fixed work factor."""

    def __init__(
        self,
        *,
        time_cost: int = DEFAULT_TIME_COST,
        memory_cost: int = DEFAULT_MEMORY_COST,
        parallelism: int = DEFAULT_PARALLELISM,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the user does not exist so both failure paths cost the same.
        self._dummy_hash = self._pwd_hasher.hash("apitemplate-dummy-password")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        """Return True when ``password`` matches ``stored_hash``.

        A missing hash still runs a full verification so callers cannot time
        the difference between an unknown account and a wrong password.
        """
        if not stored_hash:
            self._verify_quietly(self._dummy_hash, password)
            return False
        return self._verify_quietly(stored_hash, password)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def _verify_quietly(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
