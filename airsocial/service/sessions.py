from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from airsocial.logging import get_logger
from airsocial.service.errors import (
    AuthenticationError,
    NotFoundError,
    ServiceError,
    TokenError,
    TokenRevokedError,
    map_storage_error,
)
from airsocial.service.tokens import AccessClaims, TokenCodec
from airsocial.storage.errors import StorageError
from airsocial.storage.models import RefreshToken, hash_refresh_token

logger = get_logger(__name__)


class RefreshStore(Protocol):
    def create_refresh_token(
        self, user_id: int, device_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]: ...

    def revoke_refresh_token(self, token_id: int) -> bool: ...

    def revoke_device_refresh_tokens(self, user_id: int, device_id: str) -> int: ...

    def revoke_user_refresh_tokens(self, user_id: int) -> int: ...

    def delete_stale_refresh_tokens(self, before: datetime) -> int: ...


@dataclass
class TokenInfo:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class SessionService:
    """Mints, rotates and revokes refresh/access token pairs.

    Refresh tokens are opaque UUIDv4 strings; only their SHA-256 hex digest is
    stored. Each refresh is single-use: the presented row is revoked with a
    conditional update and a new row is created for the same device. Presenting
    a token that is already revoked is treated as theft and revokes every
    session of the owning user.
    """

    def __init__(
        self,
        store: RefreshStore,
        codec: TokenCodec,
        *,
        refresh_ttl_seconds: int,
        retention: timedelta = timedelta(days=30),
        cache: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self.retention = retention
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _call_store(self, method: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(method, *args)
        except StorageError as exc:
            raise map_storage_error(exc) from exc

    async def create_session(self, user_id: int, device_id: str) -> TokenInfo:
        try:
            await self.revoke_device_session(user_id, device_id)
        except ServiceError as exc:
            # The insert below revokes prior device rows in the same transaction
            self.logger.warning(
                "session_device_revoke_failed",
                user_id=user_id,
                device_id=device_id,
                error=exc.message,
            )

        raw = str(uuid.uuid4())
        expires_at = self._now() + self.refresh_ttl
        await self._call_store(
            self.store.create_refresh_token,
            user_id,
            device_id,
            hash_refresh_token(raw),
            expires_at,
        )
        self.logger.info("session_created", user_id=user_id, device_id=device_id)
        return TokenInfo(
            access_token=self.codec.sign(user_id, device_id),
            refresh_token=raw,
            expires_in=self.codec.access_ttl_seconds,
        )

    async def refresh(self, raw_refresh: str, *, access_token: Optional[str] = None) -> TokenInfo:
        """Rotate a refresh token.

        ``access_token``, when given, is the access token the client is
        replacing; it is added to the block list after a successful rotation.
        """
        record = await self._call_store(
            self.store.get_refresh_token_by_hash, hash_refresh_token(raw_refresh)
        )
        if record is None:
            raise AuthenticationError("invalid refresh token")

        if record.revoked_at is not None:
            await self._handle_replay(record)
            raise TokenRevokedError("refresh token has been revoked")

        if record.expires_at <= self._now():
            raise AuthenticationError("refresh token has expired")

        won = await self._call_store(self.store.revoke_refresh_token, record.id)
        if not won:
            # Another request rotated this token between our read and update
            await self._handle_replay(record)
            raise TokenRevokedError("refresh token has been revoked")

        tokens = await self.create_session(record.user_id, record.device_id)
        if access_token:
            await self._block_quietly(access_token)
        return tokens

    async def _handle_replay(self, record: RefreshToken) -> None:
        self.logger.warning(
            "security_alert",
            reason="reuse of revoked refresh token detected",
            user_id=record.user_id,
            device_id=record.device_id,
            refresh_token_id=record.id,
        )
        await self.revoke_all_user_sessions(record.user_id)

    async def revoke_single(self, raw_refresh: str) -> None:
        record = await self._call_store(
            self.store.get_refresh_token_by_hash, hash_refresh_token(raw_refresh)
        )
        if record is None:
            raise NotFoundError("refresh token not found")
        await self._call_store(self.store.revoke_refresh_token, record.id)

    async def revoke_device_session(self, user_id: int, device_id: str) -> int:
        return await self._call_store(
            self.store.revoke_device_refresh_tokens, user_id, device_id
        )

    async def revoke_all_user_sessions(self, user_id: int) -> int:
        revoked = await self._call_store(self.store.revoke_user_refresh_tokens, user_id)
        self.logger.info("sessions_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    async def cleanup(self) -> int:
        threshold = self._now() - self.retention
        deleted = await self._call_store(self.store.delete_stale_refresh_tokens, threshold)
        self.logger.info("refresh_token_cleanup", deleted=deleted, threshold=threshold.isoformat())
        return deleted

    def validate(self, access_token: str) -> AccessClaims:
        return self.codec.parse(access_token)

    async def authenticate(self, access_token: str) -> AccessClaims:
        """Parse an access token and reject it if it was blocked at logout or refresh."""
        claims = self.validate(access_token)
        if self.cache is not None and await self._is_blocked(access_token):
            raise TokenRevokedError("access token has been revoked")
        return claims

    async def block_access_token(self, access_token: str) -> None:
        if self.cache is None:
            return
        try:
            claims = self.codec.parse(access_token)
        except TokenError:
            # Expired or invalid tokens are already unusable
            return
        remaining = int((claims.expires_at - self._now()).total_seconds())
        if remaining > 0:
            await self.cache.block_access_token(access_token, remaining)

    async def _block_quietly(self, access_token: str) -> None:
        try:
            await self.block_access_token(access_token)
        except StorageError as exc:
            self.logger.warning("access_token_block_failed", error=str(exc))

    async def _is_blocked(self, access_token: str) -> bool:
        try:
            return await self.cache.is_access_token_blocked(access_token)
        except StorageError as exc:
            raise map_storage_error(exc) from exc
