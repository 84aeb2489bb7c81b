"""Atomicity strategies for ``redis.asyncio`` clients."""

from __future__ import annotations

from typing import Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError, WatchError

from keylock.core.errors import LockOperationError
from keylock.core.locks import AsyncAtomicityStrategy, StrategyKind, as_text
from keylock.core.scripts import SCRIPTS
from keylock.core.strategies import store_errors
from keylock.utils.logging import get_logger


logger = get_logger("keylock.strategies")


class AsyncTransactionStrategy:
    kind = StrategyKind.TRANSACTION

    def __init__(self, client: Redis) -> None:
        self._client = client

    async def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        with store_errors(key, "acquire"):
            return bool(await self._client.set(key, token, nx=True, px=ttl_ms))

    async def release(self, key: str, token: str) -> bool:
        with store_errors(key, "release"):
            async with self._client.pipeline() as pipe:
                try:
                    await pipe.watch(key)
                    if as_text(await pipe.get(key)) != token:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    result = await pipe.execute()
                except WatchError:
                    logger.debug("Release of %s aborted: key changed while watched", key)
                    return False
        return bool(result and result[0])

    async def extend(self, key: str, token: str, additional_ms: int) -> bool:
        with store_errors(key, "extend"):
            async with self._client.pipeline() as pipe:
                try:
                    await pipe.watch(key)
                    if as_text(await pipe.get(key)) != token:
                        await pipe.unwatch()
                        return False
                    expiration = await pipe.pttl(key)
                    if expiration is None or expiration < 0:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.pexpire(key, expiration + additional_ms)
                    result = await pipe.execute()
                except WatchError:
                    logger.debug("Extend of %s aborted: key changed while watched", key)
                    return False
        return bool(result and result[0])


class AsyncScriptStrategy:
    kind = StrategyKind.SCRIPT

    def __init__(self, client: Redis) -> None:
        self._client = client
        self._shas: Dict[str, Optional[str]] = dict.fromkeys(SCRIPTS)

    async def _sha(self, name: str, key: str) -> str:
        sha = self._shas[name]
        if sha is None:
            try:
                sha = await self._client.script_load(SCRIPTS[name])
            except RedisError:
                logger.warning("Failed to register %s script; will retry on next use", name)
                raise
            if not sha:
                raise LockOperationError(key, name, f"Store returned no SHA for the {name} script")
            self._shas[name] = sha
        return sha

    async def _run(self, name: str, key: str, *args: object) -> bool:
        with store_errors(key, name):
            try:
                result = await self._client.evalsha(await self._sha(name, key), 1, key, *args)
            except NoScriptError:
                self._shas[name] = None
                result = await self._client.evalsha(await self._sha(name, key), 1, key, *args)
        return int(result or 0) == 1

    async def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        return await self._run("acquire", key, token, ttl_ms)

    async def release(self, key: str, token: str) -> bool:
        return await self._run("release", key, token)

    async def extend(self, key: str, token: str, additional_ms: int) -> bool:
        return await self._run("extend", key, token, additional_ms)


def make_async_strategy(kind: StrategyKind | str, client: Redis) -> AsyncAtomicityStrategy:
    kind = StrategyKind(kind)
    if kind is StrategyKind.TRANSACTION:
        return AsyncTransactionStrategy(client)
    return AsyncScriptStrategy(client)


__all__ = ["AsyncTransactionStrategy", "AsyncScriptStrategy", "make_async_strategy"]
