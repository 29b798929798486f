from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmailError(ConstraintViolation):
    """Raised by create_user when the email is already registered."""

    def __init__(self, email: str):
        super().__init__("email already exists", {"field": "email"})
        self.email = email


__all__ = ["ConstraintViolation", "DuplicateEmailError"]
