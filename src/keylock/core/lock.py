"""Blocking lock handle for the synchronous redis client."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Union

from redis import Redis

from keylock.core.errors import LockNotHeldError
from keylock.core.locks import AtomicityStrategy, StrategyKind, as_text
from keylock.core.settings import LockSettings
from keylock.core.strategies import make_strategy, store_errors
from keylock.core.token import Token, TokenScope, short
from keylock.utils.logging import get_logger


logger = get_logger("keylock.lock")

StrategyArg = Union[StrategyKind, str, AtomicityStrategy]


class Lock:
    """Named lock stored as a single key whose value is the holder's token.

    ``acquire`` polls the store every ``sleep_ms`` until the key is free or
    ``blocking_timeout_ms`` runs out (``None`` waits without bound). The token
    is kept per ``token_scope``; with the default ``THREAD`` scope one handle
    can be shared between threads without one thread releasing another's lock.
    """

    def __init__(
        self,
        client: Redis,
        name: str,
        *,
        ttl_ms: int = 1000,
        blocking: bool = True,
        blocking_timeout_ms: Optional[int] = 1000,
        sleep_ms: int = 100,
        token_scope: TokenScope = TokenScope.THREAD,
        strategy: StrategyArg = StrategyKind.SCRIPT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        if sleep_ms <= 0:
            raise ValueError("sleep_ms must be positive")
        if blocking_timeout_ms is not None and blocking_timeout_ms < 0:
            raise ValueError("blocking_timeout_ms must not be negative")
        self._client = client
        self.name = name
        self.ttl_ms = ttl_ms
        self.blocking = blocking
        self.blocking_timeout_ms = blocking_timeout_ms
        self.sleep_ms = sleep_ms
        self._token = Token(token_scope)
        if isinstance(strategy, str):
            self._strategy: AtomicityStrategy = make_strategy(strategy, client)
        else:
            self._strategy = strategy
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, client: Redis, name: str, settings: LockSettings, **overrides) -> "Lock":
        options = dict(
            ttl_ms=settings.ttl_ms,
            blocking=settings.blocking,
            blocking_timeout_ms=settings.blocking_timeout_ms,
            sleep_ms=settings.sleep_ms,
            token_scope=settings.token_scope,
            strategy=settings.strategy,
        )
        options.update(overrides)
        return cls(client, settings.key(name), **options)

    @property
    def token(self) -> Optional[str]:
        """Token held in the caller's scope, if any."""
        return self._token.get()

    def acquire(
        self,
        blocking: Optional[bool] = None,
        blocking_timeout_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Try to take the lock; returns False on contention, timeout or cancellation.

        Setting ``cancel_event`` from another thread interrupts the wait between
        attempts. A blocking wait gives up once less than one ``sleep_ms`` of the
        budget is left, so a ``blocking_timeout_ms`` below ``sleep_ms`` means
        exactly one attempt.
        """
        blocking = self.blocking if blocking is None else blocking
        timeout_ms = self.blocking_timeout_ms if blocking_timeout_ms is None else blocking_timeout_ms
        interval = self.sleep_ms / 1000.0
        deadline = None if timeout_ms is None else self._clock() + timeout_ms / 1000.0

        # Reuse the scope's token on re-entry; one candidate for every retry.
        candidate = self._token.get() or Token.generate()
        while True:
            if self._strategy.try_acquire(self.name, candidate, self.ttl_ms):
                self._token.set(candidate)
                logger.debug("Acquired %s with token %s", self.name, short(candidate))
                return True
            if not blocking:
                logger.debug("Lock %s is held elsewhere", self.name)
                return False
            if deadline is not None and deadline - self._clock() < interval:
                logger.debug("Gave up waiting for %s after %s ms", self.name, timeout_ms)
                return False
            if cancel_event is not None:
                if cancel_event.wait(interval):
                    logger.debug("Wait for %s cancelled", self.name)
                    return False
            else:
                self._sleep(interval)

    def release(self) -> None:
        """Release the lock if the store still holds this scope's token."""
        token = self._token.get()
        if token is None:
            raise LockNotHeldError(self.name)
        self._token.clear()
        released = self._strategy.release(self.name, token)
        logger.debug("Released %s (token %s, deleted=%s)", self.name, short(token), released)

    def extend(self, additional_ms: int) -> bool:
        """Add ``additional_ms`` to the remaining TTL if the lock is still ours."""
        token = self._token.get()
        if token is None:
            raise LockNotHeldError(self.name)
        extended = self._strategy.extend(self.name, token, additional_ms)
        logger.debug("Extend %s by %d ms: %s", self.name, additional_ms, extended)
        return extended

    def locked(self) -> bool:
        """Whether any holder currently owns the key."""
        with store_errors(self.name, "locked"):
            return bool(self._client.exists(self.name))

    def owned(self) -> bool:
        """Whether the key currently holds this scope's token."""
        token = self._token.get()
        if token is None:
            return False
        with store_errors(self.name, "owned"):
            return as_text(self._client.get(self.name)) == token

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._token.is_held():
            self.release()

    def __repr__(self) -> str:
        return f"<Lock name={self.name!r} scope={self._token.scope.value}>"
