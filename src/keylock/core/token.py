"""Ownership tokens and the scopes they are stored in.

A token is only ever visible to the scope that set it. With ``THREAD`` scope
a thread that outlived its TTL cannot see (and therefore cannot release) the
token of another thread that re-acquired the same key through the same handle.
"""

from __future__ import annotations

import enum
import itertools
import threading
import uuid
from contextvars import ContextVar
from types import MappingProxyType
from typing import Mapping, Optional


_context_tokens: ContextVar[Mapping[int, str]] = ContextVar("keylock_tokens", default=MappingProxyType({}))
_slot_ids = itertools.count()


class TokenScope(str, enum.Enum):
    """Where a handle keeps the token of its current acquisition."""

    INSTANCE = "instance"
    THREAD = "thread"
    CONTEXT = "context"


class _InstanceSlot:
    def __init__(self) -> None:
        self._value: Optional[str] = None

    def get(self) -> Optional[str]:
        return self._value

    def set(self, value: Optional[str]) -> None:
        self._value = value


class _ThreadSlot:
    def __init__(self) -> None:
        self._local = threading.local()

    def get(self) -> Optional[str]:
        return getattr(self._local, "value", None)

    def set(self, value: Optional[str]) -> None:
        self._local.value = value


class _ContextSlot:
    """Entry in the module-wide context mapping, keyed by a per-slot id."""

    def __init__(self) -> None:
        self._id = next(_slot_ids)

    def get(self) -> Optional[str]:
        return _context_tokens.get().get(self._id)

    def set(self, value: Optional[str]) -> None:
        tokens = dict(_context_tokens.get())
        if value is None:
            if self._id not in tokens:
                return
            del tokens[self._id]
        else:
            tokens[self._id] = value
        _context_tokens.set(MappingProxyType(tokens))


_SLOTS = {
    TokenScope.INSTANCE: _InstanceSlot,
    TokenScope.THREAD: _ThreadSlot,
    TokenScope.CONTEXT: _ContextSlot,
}


class Token:
    """Scoped holder for the ownership token of one lock handle."""

    def __init__(self, scope: TokenScope = TokenScope.THREAD) -> None:
        self.scope = TokenScope(scope)
        self._slot = _SLOTS[self.scope]()

    @staticmethod
    def generate() -> str:
        return uuid.uuid4().hex

    def get(self) -> Optional[str]:
        return self._slot.get()

    def set(self, token: str) -> None:
        self._slot.set(token)

    def clear(self) -> None:
        self._slot.set(None)

    def is_held(self) -> bool:
        return self._slot.get() is not None


def short(token: Optional[str]) -> str:
    """Abbreviated token for log lines."""
    if not token:
        return "-"
    return token[:8]


__all__ = ["Token", "TokenScope", "short"]
