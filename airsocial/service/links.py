from __future__ import annotations

from urllib.parse import quote


class LinkBuilder:
    """Builds absolute links embedded in outgoing emails."""

    def __init__(self, base_url: str, api_version: str = "v1") -> None:
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version.strip("/")

    @property
    def prefix(self) -> str:
        return f"/api/{self.api_version}"

    def _auth_url(self, path: str, token: str) -> str:
        return f"{self.base_url}{self.prefix}/auth/{path}?token={quote(token, safe='')}"

    def verify_email_url(self, token: str) -> str:
        return self._auth_url("verify-email", token)

    def reset_password_url(self, token: str) -> str:
        return self._auth_url("reset-password", token)
