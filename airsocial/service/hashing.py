from __future__ import annotations

import hashlib

import bcrypt

from airsocial.logging import get_logger
from airsocial.service.errors import ServerError

logger = get_logger(__name__)

DEFAULT_ROUNDS = 12


class CredentialHasher:
    """bcrypt password hashing with a SHA-256 pre-hash.

    bcrypt silently truncates input at 72 bytes, so the UTF-8 password is
    reduced to its raw 32-byte SHA-256 digest first. Every byte of a long
    passphrase stays significant and stored hashes match the existing
    credential format.
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds

    @staticmethod
    def _prehash(plain: str) -> bytes:
        return hashlib.sha256(plain.encode("utf-8")).digest()

    def hash(self, plain: str) -> str:
        try:
            hashed = bcrypt.hashpw(self._prehash(plain), bcrypt.gensalt(rounds=self.rounds))
        except (ValueError, TypeError) as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("failed to hash password") from exc
        return hashed.decode("utf-8")

    def verify(self, plain: str, stored_hash: str) -> bool:
        """Return True when ``plain`` matches ``stored_hash``; never raises."""
        if not stored_hash:
            return False
        try:
            return bcrypt.checkpw(self._prehash(plain), stored_hash.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            logger.warning("password_hash_malformed", error=str(exc))
            return False
