from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from airsocial.logging import get_logger
from airsocial.storage.errors import ConstraintViolation
from airsocial.storage.models import Profile, RefreshToken, User, utc_now
from airsocial.storage.redis_cache import _EphemeralTokenOps


class MemoryStore:
    """In-memory user and refresh-token store for tests and local development.

    Mirrors the PostgresStore contract, including the one-active-token-per-device
    guarantee and the conditional revoke used by refresh rotation. Returned
    records are copies, so callers see the same snapshot semantics as with the
    database.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.refresh_tokens: Dict[int, RefreshToken] = {}
        self._user_seq = 0
        self._token_seq = 0
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == normalized:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}, kind="unique"
                    )
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}, kind="unique"
                    )
            self._user_seq += 1
            now = utc_now()
            user = User(
                id=self._user_seq,
                email=normalized,
                username=username,
                password_hash=password_hash,
                profile=Profile(full_name=full_name),
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def _find_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def update_password(self, email: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = utc_now()
            user.version += 1
            return replace(user)

    def mark_email_verified(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            if not user:
                return None
            now = utc_now()
            if not user.verified:
                user.verified = True
                user.verified_at = now
            user.updated_at = now
            user.version += 1
            return replace(user)

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: int,
        device_id: str,
        token_hash: str,
        expires_at: datetime,
    ) -> RefreshToken:
        with self._data_lock:
            if any(t.token_hash == token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}, kind="unique"
                )
            now = utc_now()
            for token in self.refresh_tokens.values():
                if (
                    token.user_id == user_id
                    and token.device_id == device_id
                    and token.revoked_at is None
                ):
                    token.revoked_at = now
            self._token_seq += 1
            record = RefreshToken(
                id=self._token_seq,
                user_id=user_id,
                device_id=device_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=now,
            )
            self.refresh_tokens[record.id] = record
            return replace(record)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash), None
            )
            return replace(token) if token else None

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in sorted(self.refresh_tokens.values(), key=lambda t: t.id)
                if t.user_id == user_id
            ]

    def revoke_refresh_token(self, token_id: int) -> bool:
        """Revoke one token if it is still unrevoked; False when another caller won."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.revoked_at is not None:
                return False
            token.revoked_at = utc_now()
            return True

    def revoke_device_refresh_tokens(self, user_id: int, device_id: str) -> int:
        with self._data_lock:
            now = utc_now()
            count = 0
            for token in self.refresh_tokens.values():
                if (
                    token.user_id == user_id
                    and token.device_id == device_id
                    and token.revoked_at is None
                ):
                    token.revoked_at = now
                    count += 1
            return count

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            now = utc_now()
            count = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    count += 1
            return count

    def delete_stale_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                token_id
                for token_id, token in self.refresh_tokens.items()
                if (token.revoked_at is not None and token.revoked_at < before)
                or token.expires_at < before
            ]
            for token_id in stale:
                self.refresh_tokens.pop(token_id, None)
            return len(stale)


class _MemoryClient:
    """Dict-backed stand-in for the subset of the Redis client API we use."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            expires_at = self._clock() + ex if ex else float("inf")
            self._entries[key] = (value, expires_at)
            return True

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def exists(self, key: str) -> int:
        with self._lock:
            return 1 if self._live(key) is not None else 0


class MemoryCache(_EphemeralTokenOps):
    """Process-local ephemeral token store used when Redis is not configured."""

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self.client = _MemoryClient(clock or time.monotonic)

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
