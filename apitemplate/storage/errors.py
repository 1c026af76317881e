from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheError(Exception):
    """Raised when the session store cannot be reached or rejects a command."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"session store {operation} failed")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "CacheError"]
