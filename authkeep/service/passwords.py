from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import HashingError, InvalidHashError, VerificationError

from authkeep.config import PASSWORD_HASH_COST_DEFAULT, PASSWORD_HASH_COST_MAX, PASSWORD_HASH_COST_MIN
from authkeep.logging import get_logger
from authkeep.service.errors import ServerError

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with a bounded time cost."""

    def __init__(self, cost: int = PASSWORD_HASH_COST_DEFAULT) -> None:
        if not PASSWORD_HASH_COST_MIN <= cost <= PASSWORD_HASH_COST_MAX:
            cost = PASSWORD_HASH_COST_DEFAULT
        self.cost = cost
        self._hasher = Argon2Hasher(time_cost=cost, type=Type.ID)
        self._dummy_hash: str | None = None

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("failed to process password") from exc

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._hasher.verify(hashed, plaintext)
        except (InvalidHashError, VerificationError):
            return False

    def dummy_verify(self, plaintext: str) -> None:
        """Spend the same work as a real verify against a fixed hash.

        Used when no account matches so that response time does not reveal
        whether an email is registered.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("authkeep-dummy-password")
        self.verify(plaintext, self._dummy_hash)
