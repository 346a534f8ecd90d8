from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from municipio_auth.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier(Protocol):
    def verify(self, password: str, password_hash: str) -> bool: ...


class Argon2PasswordVerifier:
    """Argon2id hashing with the parameters embedded in each encoded hash.

    Defaults match the provisioning tool: 64 MiB memory, 3 iterations,
    parallelism 1, 16 byte salt, 32 byte key.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 1,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def verify_dummy(self, password: str) -> None:
        """Spend one verification on a throwaway hash.

        Called when the email is unknown so the response time matches a real
        mismatch.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("municipio-timing-equalizer")
        self.verify(password, self._dummy_hash)
