from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(raw: str) -> str:
    """Hex SHA-256 of a raw refresh token; the raw value is never stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class Profile:
    full_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    cover_image: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None


@dataclass
class User:
    id: int
    email: str
    username: str
    password_hash: str
    profile: Profile = field(default_factory=Profile)
    verified: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1

    def public_dict(self) -> dict:
        """User fields safe to return to clients (no password hash)."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "full_name": self.profile.full_name,
            "bio": self.profile.bio,
            "avatar": self.profile.avatar,
            "cover_image": self.profile.cover_image,
            "location": self.profile.location,
            "website": self.profile.website,
            "verified": self.verified,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RefreshToken:
    id: int
    user_id: int
    device_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)
