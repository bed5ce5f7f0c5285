from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for backend failures surfaced by the credential stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness constraint was violated; ``detail["field"]`` names the column."""


__all__ = ["StorageError", "ConstraintViolation"]
