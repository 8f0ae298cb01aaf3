from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached.

    Callers decide whether to retry; stores never retry on their own because
    replaying a rotation could issue two tokens for one presentation.
    """

    status_code = 503
    error_code = "unavailable"

    def __init__(self, message: str = "credential store unavailable", *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.detail: Dict[str, Any] = {}


__all__ = ["ConstraintViolation", "StoreUnavailable"]
