from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with costs taken from settings."""

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 64 * 1024, parallelism: int = 4
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Burned on lookups for unknown emails so that path costs one verify too
        self._dummy_hash = self._hasher.hash("warden-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        """Return True when ``password`` matches ``digest``; never raises."""
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def burn(self, password: str) -> None:
        """Spend one verification's worth of work and discard the result."""
        self.verify(password, self._dummy_hash)


__all__ = ["PasswordHasher"]
