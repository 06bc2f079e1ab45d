from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint on a user record is violated.

    ``detail["field"]`` names the colliding column (username, email, external_id).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StorageError(Exception):
    """The backing data store failed or is unreachable."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        message = f"storage operation failed: {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StorageError"]
