"""Distributed mutual-exclusion locks on top of a single Redis key."""

from .core import (
    AsyncLock,
    Lock,
    LockError,
    LockNotHeldError,
    LockOperationError,
    LockSettings,
    RedisLockManager,
    StrategyKind,
    TokenScope,
)

__all__ = [
    "__version__",
    "AsyncLock",
    "Lock",
    "LockError",
    "LockNotHeldError",
    "LockOperationError",
    "LockSettings",
    "RedisLockManager",
    "StrategyKind",
    "TokenScope",
]

__version__ = "0.1.0"
