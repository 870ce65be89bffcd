from __future__ import annotations

from typing import Optional


class ConstraintViolation(Exception):
    """Raised when a write would break a uniqueness rule of the account table.

    ``field`` names the offending column (``email`` is the only unique one).
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = {"field": field} if field else {}


__all__ = ["ConstraintViolation"]
