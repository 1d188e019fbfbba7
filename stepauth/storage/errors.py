from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by an ``AuthStore`` backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write (duplicate identity, unknown user)."""


class SchemaMissing(StorageError):
    """A table the store depends on does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "SchemaMissing"]
