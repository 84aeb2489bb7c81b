"""Atomicity strategies for the synchronous redis client.

``TransactionStrategy`` relies on WATCH/MULTI/EXEC: the check happens on the
client and the store aborts the transaction if the key changed in between.
``ScriptStrategy`` ships the whole check-and-act sequence to the server as a
Lua script, which Redis runs without interleaving other commands.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from redis import Redis
from redis.exceptions import NoScriptError, RedisError, WatchError

from keylock.core.errors import LockOperationError
from keylock.core.locks import AtomicityStrategy, StrategyKind, as_text
from keylock.core.scripts import SCRIPTS
from keylock.utils.logging import get_logger


logger = get_logger("keylock.strategies")


@contextmanager
def store_errors(key: str, operation: str) -> Iterator[None]:
    """Re-raise redis-py failures as ``LockOperationError``."""
    try:
        yield
    except RedisError as exc:
        raise LockOperationError(key, operation, f"{operation} on {key!r} failed: {exc}") from exc


class TransactionStrategy:
    """Optimistic WATCH + MULTI/EXEC implementation."""

    kind = StrategyKind.TRANSACTION

    def __init__(self, client: Redis) -> None:
        self._client = client

    def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        with store_errors(key, "acquire"):
            return bool(self._client.set(key, token, nx=True, px=ttl_ms))

    def release(self, key: str, token: str) -> bool:
        with store_errors(key, "release"), self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if as_text(pipe.get(key)) != token:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                result = pipe.execute()
            except WatchError:
                logger.debug("Release of %s aborted: key changed while watched", key)
                return False
        return bool(result and result[0])

    def extend(self, key: str, token: str, additional_ms: int) -> bool:
        with store_errors(key, "extend"), self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if as_text(pipe.get(key)) != token:
                    pipe.unwatch()
                    return False
                expiration = pipe.pttl(key)
                if expiration is None or expiration < 0:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.pexpire(key, expiration + additional_ms)
                result = pipe.execute()
            except WatchError:
                logger.debug("Extend of %s aborted: key changed while watched", key)
                return False
        return bool(result and result[0])


class ScriptStrategy:
    """Server-side Lua implementation with lazily registered scripts."""

    kind = StrategyKind.SCRIPT

    def __init__(self, client: Redis) -> None:
        self._client = client
        self._shas: Dict[str, Optional[str]] = dict.fromkeys(SCRIPTS)

    def _sha(self, name: str, key: str) -> str:
        sha = self._shas[name]
        if sha is None:
            try:
                sha = self._client.script_load(SCRIPTS[name])
            except RedisError:
                logger.warning("Failed to register %s script; will retry on next use", name)
                raise
            if not sha:
                raise LockOperationError(key, name, f"Store returned no SHA for the {name} script")
            self._shas[name] = sha
        return sha

    def _run(self, name: str, key: str, *args: object) -> bool:
        with store_errors(key, name):
            try:
                result = self._client.evalsha(self._sha(name, key), 1, key, *args)
            except NoScriptError:
                # Script cache was flushed on the server.
                self._shas[name] = None
                result = self._client.evalsha(self._sha(name, key), 1, key, *args)
        return int(result or 0) == 1

    def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        return self._run("acquire", key, token, ttl_ms)

    def release(self, key: str, token: str) -> bool:
        return self._run("release", key, token)

    def extend(self, key: str, token: str, additional_ms: int) -> bool:
        return self._run("extend", key, token, additional_ms)


def make_strategy(kind: StrategyKind | str, client: Redis) -> AtomicityStrategy:
    kind = StrategyKind(kind)
    if kind is StrategyKind.TRANSACTION:
        return TransactionStrategy(client)
    return ScriptStrategy(client)


__all__ = ["TransactionStrategy", "ScriptStrategy", "make_strategy", "store_errors"]
