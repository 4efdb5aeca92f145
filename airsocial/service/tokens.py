from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from airsocial.logging import get_logger
from airsocial.service.errors import (
    AudienceMismatchError,
    IssuerMismatchError,
    MalformedTokenError,
    TokenExpiredError,
    TokenSignatureError,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    device_id: str
    audience: str
    issuer: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        try:
            return cls(
                user_id=int(payload["sub"]),
                device_id=str(payload.get("dev", "")),
                audience=payload["aud"],
                issuer=payload["iss"],
                issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
                not_before=datetime.fromtimestamp(int(payload.get("nbf", 0)), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("invalid token claims") from exc


class TokenCodec:
    """Signs and validates HS256 access tokens.

    Claims: ``sub`` (user id as string), ``dev`` (device id), ``aud``, ``iss``,
    ``iat``, ``nbf`` and ``exp`` as integer epoch seconds. No random claim is
    included, so a token is fully determined by its inputs and the clock.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self._clock = clock or _utc_now

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, user_id: int, device_id: str) -> str:
        now = int(self._now().timestamp())
        payload = {
            "sub": str(user_id),
            "dev": device_id,
            "aud": self.audience,
            "iss": self.issuer,
            "iat": now,
            "nbf": now,
            "exp": now + self.access_ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def parse(self, token: str) -> AccessClaims:
        if not token or not isinstance(token, str):
            raise MalformedTokenError("token is empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise MalformedTokenError("token must have three segments") from exc

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")
        # Reject alg=none and asymmetric algorithms before touching the signature
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenSignatureError("unsupported signing algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenSignatureError("token signature is invalid")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")

        exp = payload.get("exp")
        if exp is None:
            raise MalformedTokenError("token has no expiry")
        try:
            exp_ts = float(exp)
            nbf_ts = float(payload.get("nbf", 0))
        except (TypeError, ValueError) as exc:
            raise MalformedTokenError("token time claims are not numeric") from exc
        now_ts = self._now().timestamp()
        if exp_ts <= now_ts:
            raise TokenExpiredError("token has expired")
        if nbf_ts > now_ts:
            raise MalformedTokenError("token is not yet valid")

        if payload.get("iss") != self.issuer:
            raise IssuerMismatchError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise AudienceMismatchError("token audience mismatch")

        return AccessClaims.from_payload(payload)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
