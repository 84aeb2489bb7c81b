"""Redis-based distributed lock for asyncio code."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Union

from redis.asyncio import Redis

from keylock.core.errors import LockNotHeldError
from keylock.core.locks import AsyncAtomicityStrategy, LockManager, StrategyKind, as_text
from keylock.core.settings import LockSettings
from keylock.core.strategies import store_errors
from keylock.core.strategies_async import make_async_strategy
from keylock.core.token import Token, TokenScope, short
from keylock.utils.logging import get_logger


logger = get_logger("keylock.lock")

AsyncStrategyArg = Union[StrategyKind, str, AsyncAtomicityStrategy]


class AsyncLock:
    """Awaitable twin of :class:`keylock.core.lock.Lock`.

    Tokens default to ``INSTANCE`` scope, one handle per holder, which is what
    :class:`RedisLockManager` hands out. ``CONTEXT`` scope lets concurrent tasks
    share one handle, but the token then lives in the context of the task that
    ran ``acquire``. Wrapping the call in a new task (``asyncio.create_task``,
    or ``asyncio.wait_for`` before Python 3.12) stores the token in that task's
    context copy, and the caller can no longer see or release it.
    """

    def __init__(
        self,
        redis: Redis,
        name: str,
        *,
        ttl_ms: int = 1000,
        blocking: bool = True,
        blocking_timeout_ms: Optional[int] = 1000,
        sleep_ms: int = 100,
        token_scope: TokenScope = TokenScope.INSTANCE,
        strategy: AsyncStrategyArg = StrategyKind.SCRIPT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        if sleep_ms <= 0:
            raise ValueError("sleep_ms must be positive")
        if blocking_timeout_ms is not None and blocking_timeout_ms < 0:
            raise ValueError("blocking_timeout_ms must not be negative")
        self._redis = redis
        self.name = name
        self.ttl_ms = ttl_ms
        self.blocking = blocking
        self.blocking_timeout_ms = blocking_timeout_ms
        self.sleep_ms = sleep_ms
        self._token = Token(token_scope)
        if isinstance(strategy, str):
            self._strategy: AsyncAtomicityStrategy = make_async_strategy(strategy, redis)
        else:
            self._strategy = strategy
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, redis: Redis, name: str, settings: LockSettings, **overrides) -> "AsyncLock":
        options = dict(
            ttl_ms=settings.ttl_ms,
            blocking=settings.blocking,
            blocking_timeout_ms=settings.blocking_timeout_ms,
            sleep_ms=settings.sleep_ms,
            strategy=settings.strategy,
        )
        # Tasks share the event loop thread, so THREAD keeps the INSTANCE default.
        if settings.token_scope is not TokenScope.THREAD:
            options["token_scope"] = settings.token_scope
        options.update(overrides)
        return cls(redis, settings.key(name), **options)

    @property
    def token(self) -> Optional[str]:
        return self._token.get()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def _pause(self, interval: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Wait one polling interval; True when ``cancel_event`` fired."""
        if cancel_event is None:
            await self._sleep(interval)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def acquire(
        self,
        blocking: Optional[bool] = None,
        blocking_timeout_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """Try to take the lock; returns False on contention or timeout.

        Setting ``cancel_event`` interrupts the wait between attempts and also
        returns False. Cancelling the awaiting task is different: the
        ``CancelledError`` propagates to the caller. Neither path stores a
        token. A ``blocking_timeout_ms`` below ``sleep_ms`` makes exactly one
        attempt.
        """
        blocking = self.blocking if blocking is None else blocking
        timeout_ms = self.blocking_timeout_ms if blocking_timeout_ms is None else blocking_timeout_ms
        interval = self.sleep_ms / 1000.0
        deadline = None if timeout_ms is None else self._now() + timeout_ms / 1000.0

        candidate = self._token.get() or Token.generate()
        while True:
            if await self._strategy.try_acquire(self.name, candidate, self.ttl_ms):
                self._token.set(candidate)
                logger.debug("Acquired %s with token %s", self.name, short(candidate))
                return True
            if not blocking:
                logger.debug("Lock %s is held elsewhere", self.name)
                return False
            if deadline is not None and deadline - self._now() < interval:
                logger.debug("Gave up waiting for %s after %s ms", self.name, timeout_ms)
                return False
            if await self._pause(interval, cancel_event):
                logger.debug("Wait for %s cancelled", self.name)
                return False

    async def release(self) -> None:
        token = self._token.get()
        if token is None:
            raise LockNotHeldError(self.name)
        self._token.clear()
        released = await self._strategy.release(self.name, token)
        logger.debug("Released %s (token %s, deleted=%s)", self.name, short(token), released)

    async def extend(self, additional_ms: int) -> bool:
        token = self._token.get()
        if token is None:
            raise LockNotHeldError(self.name)
        return await self._strategy.extend(self.name, token, additional_ms)

    async def locked(self) -> bool:
        with store_errors(self.name, "locked"):
            return bool(await self._redis.exists(self.name))

    async def owned(self) -> bool:
        token = self._token.get()
        if token is None:
            return False
        with store_errors(self.name, "owned"):
            return as_text(await self._redis.get(self.name)) == token

    async def __aenter__(self) -> bool:
        return await self.acquire()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._token.is_held():
            await self.release()


class RedisLockManager(LockManager):
    """Hands out :class:`AsyncLock` handles sharing one client and one set of defaults."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        settings: Optional[LockSettings] = None,
        redis: Optional[Redis] = None,
    ) -> None:
        self._settings = settings or LockSettings.from_env()
        self._redis = redis if redis is not None else Redis.from_url(url or self._settings.redis_url)

    @property
    def settings(self) -> LockSettings:
        return self._settings

    def lock(self, key: str, ttl_ms: Optional[int] = None, **overrides) -> AsyncLock:
        if ttl_ms is not None:
            overrides["ttl_ms"] = ttl_ms
        return AsyncLock.from_settings(self._redis, key, self._settings, **overrides)

    async def close(self) -> None:
        await self._redis.aclose()
