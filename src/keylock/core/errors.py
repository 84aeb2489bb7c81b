"""Exceptions raised by lock handles and atomicity strategies."""

from __future__ import annotations

from typing import Optional


class LockError(RuntimeError):
    pass


class LockNotHeldError(LockError):
    """Raised when release/extend is called without a token in the current scope."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock {key!r} is not acquired or already released")
        self.key = key


class LockOperationError(LockError):
    """Store-level failure (connection, protocol, script) during a lock operation."""

    def __init__(self, key: str, operation: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Store error during {operation} on {key!r}")
        self.key = key
        self.operation = operation


__all__ = ["LockError", "LockNotHeldError", "LockOperationError"]
