from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Optional, Protocol, Tuple

from airsocial.logging import get_logger
from airsocial.service.errors import (
    AlreadyExistsError,
    BadRequestError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ServiceError,
    map_storage_error,
)
from airsocial.service.events import (
    EVENT_EMAIL_RESET_PASSWORD,
    EVENT_EMAIL_VERIFY,
    EmailEventData,
    EventBus,
    EventEnvelope,
)
from airsocial.service.hashing import CredentialHasher
from airsocial.service.links import LinkBuilder
from airsocial.service.sessions import SessionService, TokenInfo
from airsocial.service.time_utils import format_ttl_verbose
from airsocial.storage.cache_keys import (
    EMAIL_RESET_TTL_SECONDS,
    EMAIL_VERIFY_TTL_SECONDS,
    email_reset_key,
    email_verify_key,
)
from airsocial.storage.errors import CacheKeyNotFound, StorageError
from airsocial.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self, email: str, username: str, password_hash: str, *, full_name: Optional[str] = None
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_password(self, email: str, password_hash: str) -> Optional[User]: ...

    def mark_email_verified(self, email: str) -> Optional[User]: ...


class EphemeralTokenStore(Protocol):
    async def put(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    async def get(self, key: str) -> Any: ...

    async def pop(self, key: str) -> Any: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Account lifecycle: registration, login, logout, email verification and password reset.

    Verification and reset tokens are random UUIDs stored in the ephemeral
    token store under namespaced keys, mapped to the account email. The token
    is the capability: redeeming it deletes the key. Emails themselves are
    sent asynchronously by publishing an event envelope on the bus.
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionService,
        hasher: CredentialHasher,
        cache: EphemeralTokenStore,
        bus: EventBus,
        links: LinkBuilder,
        *,
        publish_timeout: Optional[float] = None,
        verify_ttl_seconds: int = EMAIL_VERIFY_TTL_SECONDS,
        reset_ttl_seconds: int = EMAIL_RESET_TTL_SECONDS,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.hasher = hasher
        self.cache = cache
        self.bus = bus
        self.links = links
        self.publish_timeout = publish_timeout
        self.verify_ttl_seconds = verify_ttl_seconds
        self.reset_ttl_seconds = reset_ttl_seconds
        self.logger = logger

    async def _store(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(method, *args, **kwargs)
        except StorageError as exc:
            raise map_storage_error(exc) from exc

    async def _cache_call(self, coro) -> Any:
        try:
            return await coro
        except StorageError as exc:
            raise map_storage_error(exc) from exc

    async def register(self, email: str, username: str, password: str) -> User:
        email = normalize_email(email)
        if await self._store(self.users.get_user_by_email, email):
            raise AlreadyExistsError("email already registered", detail={"field": "email"})
        if await self._store(self.users.get_user_by_username, username):
            raise AlreadyExistsError("username already taken", detail={"field": "username"})

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        user = await self._store(self.users.create_user, email, username, password_hash)
        self.logger.info("user_registered", user_id=user.id)

        try:
            await self.send_email_verification(user)
        except ServiceError as exc:
            # Registration stands; the user can ask for a new verification email
            self.logger.error(
                "email_verification_publish_failed",
                user_id=user.id,
                error=exc.message,
                error_type=type(exc).__name__,
            )
        return user

    async def send_email_verification(self, user: User) -> str:
        """Mint a verification token, store it and publish the email event."""
        token = str(uuid.uuid4())
        await self._cache_call(
            self.cache.put(email_verify_key(token), user.email, self.verify_ttl_seconds)
        )
        await self._publish_email(
            EVENT_EMAIL_VERIFY,
            user,
            link=self.links.verify_email_url(token),
            ttl_seconds=self.verify_ttl_seconds,
        )
        return token

    async def _publish_email(
        self, event_type: str, user: User, *, link: str, ttl_seconds: int
    ) -> None:
        data = EmailEventData(
            email=user.email,
            name=user.profile.full_name or user.username,
            link=link,
            expiry=format_ttl_verbose(ttl_seconds),
        )
        envelope = EventEnvelope.new(event_type, data)
        await self.bus.publish(event_type, envelope, timeout=self.publish_timeout)
        self.logger.info(
            "email_event_published",
            event_type=event_type,
            event_id=envelope.event_id,
            user_id=user.id,
        )

    async def resend_verification(self, email: str) -> None:
        user = await self._store(self.users.get_user_by_email, normalize_email(email))
        if user is None:
            raise NotFoundError("user not found")
        if user.verified:
            raise ConflictError("email already verified")
        await self.send_email_verification(user)

    async def login(self, email: str, password: str, device_id: str) -> Tuple[User, TokenInfo]:
        user = await self._store(self.users.get_user_by_email, normalize_email(email))
        if user is None:
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError("invalid email or password")
        matches = await asyncio.to_thread(self.hasher.verify, password, user.password_hash)
        if not matches:
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")

        tokens = await self.sessions.create_session(user.id, device_id)
        self.logger.info("login_succeeded", user_id=user.id, device_id=device_id)
        return user, tokens

    async def logout(
        self,
        user_id: int,
        device_id: Optional[str],
        all_devices: bool,
        *,
        access_token: Optional[str] = None,
    ) -> None:
        if all_devices:
            await self.sessions.revoke_all_user_sessions(user_id)
        else:
            if not device_id:
                raise BadRequestError("device_id is required unless all_devices is set")
            await self.sessions.revoke_device_session(user_id, device_id)
        if access_token:
            await self.sessions.block_access_token(access_token)
        self.logger.info(
            "logout", user_id=user_id, device_id=device_id, all_devices=all_devices
        )

    async def refresh(self, raw_refresh: str, *, access_token: Optional[str] = None) -> TokenInfo:
        return await self.sessions.refresh(raw_refresh, access_token=access_token)

    async def forgot_password(self, email: str) -> None:
        user = await self._store(self.users.get_user_by_email, normalize_email(email))
        if user is None:
            raise NotFoundError("user not found")
        token = str(uuid.uuid4())
        await self._cache_call(
            self.cache.put(email_reset_key(token), user.email, self.reset_ttl_seconds)
        )
        await self._publish_email(
            EVENT_EMAIL_RESET_PASSWORD,
            user,
            link=self.links.reset_password_url(token),
            ttl_seconds=self.reset_ttl_seconds,
        )

    async def reset_password(self, token: str, new_password: str) -> None:
        # Claiming the token removes it, so concurrent redemptions cannot both pass
        try:
            email = await self._cache_call(self.cache.pop(email_reset_key(token)))
        except CacheKeyNotFound as exc:
            raise NotFoundError("reset token is invalid or has expired") from exc

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        user = await self._store(self.users.update_password, email, password_hash)
        if user is None:
            raise NotFoundError("user not found")
        await self.sessions.revoke_all_user_sessions(user.id)
        self.logger.info("password_reset", user_id=user.id)

    async def verify_email(self, token: str) -> User:
        try:
            email = await self._cache_call(self.cache.pop(email_verify_key(token)))
        except CacheKeyNotFound as exc:
            raise BadRequestError("verification token is invalid or has expired") from exc

        user = await self._store(self.users.mark_email_verified, email)
        if user is None:
            raise NotFoundError("user not found")
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def is_reset_password_token_valid(self, token: str) -> bool:
        if not token:
            return False
        return await self._cache_call(self.cache.exists(email_reset_key(token)))
