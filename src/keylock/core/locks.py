"""Abstract interfaces for distributed locks."""

from __future__ import annotations

import abc
import enum
from typing import Optional, Protocol


class StrategyKind(str, enum.Enum):
    """How conditional mutations are made atomic against the store."""

    TRANSACTION = "transaction"
    SCRIPT = "script"


class AtomicityStrategy(Protocol):
    """Conditional key mutations that are atomic against concurrent writers."""

    def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool: ...

    def release(self, key: str, token: str) -> bool: ...

    def extend(self, key: str, token: str, additional_ms: int) -> bool: ...


class AsyncAtomicityStrategy(Protocol):
    async def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool: ...

    async def release(self, key: str, token: str) -> bool: ...

    async def extend(self, key: str, token: str, additional_ms: int) -> bool: ...


class AsyncLockHandle(Protocol):
    async def acquire(self) -> bool: ...
    async def release(self) -> None: ...
    async def extend(self, additional_ms: int) -> bool: ...
    async def __aenter__(self) -> bool: ...
    async def __aexit__(self, exc_type, exc, tb) -> None: ...


class LockManager(abc.ABC):
    @abc.abstractmethod
    def lock(self, key: str, ttl_ms: Optional[int] = None) -> AsyncLockHandle:  # pragma: no cover - interface
        """Return a lock handle for ``key``; nothing is acquired until it is entered."""
        raise NotImplementedError


def as_text(value: object) -> Optional[str]:
    """Normalise a store reply (bytes or str) for token comparison."""
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)
