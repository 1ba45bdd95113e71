"""Password hashing with Argon2id.

Hashes embed the algorithm parameters and a per-hash random salt, so a stored
hash can be verified without any other state and rehashed once the configured
work factors change.
"""

from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authledger.logging import get_logger
from authledger.service.errors import MalformedHashError

logger = get_logger(__name__)


class Argon2PasswordHasher:
    """One-way hashing and constant-time verification of passwords."""

    algo = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    @staticmethod
    def _check_format(password_hash: str) -> None:
        if not isinstance(password_hash, str) or not password_hash.startswith("$argon2"):
            logger.error("password_hash_malformed", error="not an argon2 hash")
            raise MalformedHashError("stored password hash is malformed")

    def verify(self, password: str, password_hash: str) -> bool:
        """Return True if ``password`` matches ``password_hash``.

        Raises:
            MalformedHashError: the stored hash is not a valid argon2 hash.
                This is a data/configuration fault, not a wrong password.
        """
        self._check_format(password_hash)
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            logger.error("password_hash_malformed", error=str(exc))
            raise MalformedHashError("stored password hash is malformed") from exc
        except VerificationError as exc:
            logger.warning("password_verification_failed", error=str(exc))
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        self._check_format(password_hash)
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError as exc:
            raise MalformedHashError("stored password hash is malformed") from exc
