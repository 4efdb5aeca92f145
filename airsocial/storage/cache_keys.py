from __future__ import annotations

import hashlib

# Key prefixes are shared with operators scanning Redis by flow; do not rename.
EMAIL_VERIFY_PREFIX = "worker:email:verify:"
EMAIL_RESET_PREFIX = "worker:email:reset:"
EMAIL_PROCESSED_PREFIX = "worker:email:processed:"
UPLOAD_VERIFY_PREFIX = "upload:verify:"
ACCESS_BLOCKED_PREFIX = "auth:blocked:"

EMAIL_VERIFY_TTL_SECONDS = 30 * 60
EMAIL_RESET_TTL_SECONDS = 15 * 60
UPLOAD_SESSION_TTL_SECONDS = 15 * 60


def email_verify_key(token: str) -> str:
    return f"{EMAIL_VERIFY_PREFIX}{token}"


def email_reset_key(token: str) -> str:
    return f"{EMAIL_RESET_PREFIX}{token}"


def email_processed_key(event_id: str) -> str:
    return f"{EMAIL_PROCESSED_PREFIX}{event_id}"


def upload_session_key(object_key: str) -> str:
    return f"{UPLOAD_VERIFY_PREFIX}{object_key}"


def access_blocked_key(access_token: str) -> str:
    # Hash so raw bearer tokens never appear in Redis keys
    digest = hashlib.sha256(access_token.encode("utf-8")).hexdigest()
    return f"{ACCESS_BLOCKED_PREFIX}{digest}"
