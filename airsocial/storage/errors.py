from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a backing store fails for reasons other than a constraint."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer constraint is violated.

    ``kind`` is one of ``unique``, ``foreign_key``, ``check``, ``not_null`` or
    ``serialization`` so callers can translate without inspecting driver errors.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        kind: str = "unique",
    ):
        super().__init__(message, detail)
        self.kind = kind


class CacheKeyNotFound(KeyError):
    """Raised by the ephemeral token store when a key is absent or expired."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key


__all__ = ["StorageError", "ConstraintViolation", "CacheKeyNotFound"]
