from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or existence constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeout(Exception):
    """Raised when the backing store aborts a call that ran past its deadline.

    The aborted call leaves no change behind.
    """

    def __init__(self, operation: str):
        super().__init__(f"store call timed out: {operation}")
        self.operation = operation


__all__ = ["ConstraintViolation", "StoreTimeout"]
