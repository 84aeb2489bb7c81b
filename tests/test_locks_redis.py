from __future__ import annotations

import asyncio
import contextvars
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError

from keylock.core.errors import LockNotHeldError, LockOperationError
from keylock.core.locks import StrategyKind
from keylock.core.locks_redis import AsyncLock, RedisLockManager
from keylock.core.settings import LockSettings
from keylock.core.strategies_async import (
    AsyncScriptStrategy,
    AsyncTransactionStrategy,
    make_async_strategy,
)
from keylock.core.token import TokenScope


KINDS = [StrategyKind.TRANSACTION, StrategyKind.SCRIPT]


class AlwaysHeld:
    def __init__(self) -> None:
        self.tokens: list[str] = []

    async def try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        self.tokens.append(token)
        return False

    async def release(self, key: str, token: str) -> bool:  # pragma: no cover - never reached
        return False

    async def extend(self, key: str, token: str, additional_ms: int) -> bool:  # pragma: no cover
        return False


def test_make_async_strategy(async_client):
    assert isinstance(make_async_strategy("transaction", async_client), AsyncTransactionStrategy)
    assert isinstance(make_async_strategy("script", async_client), AsyncScriptStrategy)


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", KINDS)
async def test_async_strategy_primitives(async_client, kind):
    strategy = make_async_strategy(kind, async_client)

    assert await strategy.try_acquire("res", "tok-1", 1000) is True
    assert await strategy.try_acquire("res", "tok-2", 1000) is False
    assert await strategy.extend("res", "tok-2", 1000) is False
    assert await strategy.extend("res", "tok-1", 1000) is True
    assert await async_client.pttl("res") > 1000
    assert await strategy.release("res", "tok-2") is False
    assert await async_client.get("res") == b"tok-1"
    assert await strategy.release("res", "tok-1") is True
    assert await async_client.exists("res") == 0
    assert await strategy.extend("res", "tok-1", 1000) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", KINDS)
async def test_job_scenario(async_client, kind):
    h1 = AsyncLock(async_client, "job-7", ttl_ms=1000, token_scope=TokenScope.INSTANCE, strategy=kind)
    h2 = AsyncLock(async_client, "job-7", ttl_ms=1000, blocking=False, token_scope=TokenScope.INSTANCE, strategy=kind)

    assert await h1.acquire() is True
    assert await async_client.get("job-7") == h1.token.encode()
    assert await h2.acquire() is False

    await h1.release()
    assert await async_client.exists("job-7") == 0
    assert await h2.acquire() is True


@pytest.mark.asyncio
async def test_release_twice_raises(async_client):
    lock = AsyncLock(async_client, "res")
    assert await lock.acquire()
    await lock.release()

    with pytest.raises(LockNotHeldError):
        await lock.release()
    with pytest.raises(LockNotHeldError):
        await lock.extend(100)


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", KINDS)
async def test_context_scope_keeps_tasks_apart(async_client, kind):
    lock = AsyncLock(async_client, "shared", blocking=False, token_scope=TokenScope.CONTEXT, strategy=kind)
    a_acquired = asyncio.Event()
    b_acquired = asyncio.Event()
    out: dict = {}

    async def task_a() -> None:
        out["a"] = await lock.acquire()
        out["a_token"] = lock.token
        a_acquired.set()
        await b_acquired.wait()
        out["a_extend"] = await lock.extend(5000)
        await lock.release()

    async def task_b() -> None:
        await a_acquired.wait()
        out["b_sees"] = lock.token
        await async_client.delete("shared")
        out["b"] = await lock.acquire()
        out["b_token"] = lock.token
        b_acquired.set()

    await asyncio.wait_for(asyncio.gather(task_a(), task_b()), timeout=5)

    assert out["a"] is True and out["b"] is True
    assert out["b_sees"] is None
    assert out["a_extend"] is False
    assert await async_client.get("shared") == out["b_token"].encode()


@pytest.mark.asyncio
async def test_blocking_timeout_bounds_attempts(async_client, clock):
    strategy = AlwaysHeld()
    lock = AsyncLock(
        async_client,
        "res",
        blocking_timeout_ms=250,
        sleep_ms=100,
        strategy=strategy,
        sleep=clock.async_sleep,
        clock=clock,
    )

    assert await lock.acquire() is False
    assert 1 <= len(strategy.tokens) <= 3
    assert sum(clock.sleeps) <= 0.3 + 1e-9
    assert len(set(strategy.tokens)) == 1


@pytest.mark.asyncio
async def test_blocking_acquire_waits_for_release(async_client):
    holder = AsyncLock(async_client, "res", token_scope=TokenScope.INSTANCE)
    waiter = AsyncLock(async_client, "res", blocking_timeout_ms=2000, sleep_ms=10, token_scope=TokenScope.INSTANCE)
    assert await holder.acquire()

    async def release_later() -> None:
        await asyncio.sleep(0.05)
        await holder.release()

    release_task = asyncio.create_task(release_later())
    assert await waiter.acquire() is True
    await release_task
    assert await waiter.owned()


@pytest.mark.asyncio
async def test_cancel_event_interrupts_wait(async_client):
    await async_client.set("res", "other", px=60_000)
    lock = AsyncLock(async_client, "res", blocking_timeout_ms=None, sleep_ms=20)
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    assert await asyncio.wait_for(lock.acquire(cancel_event=cancel), timeout=2) is False
    assert lock.token is None


@pytest.mark.asyncio
async def test_task_cancellation_leaves_no_token(async_client):
    await async_client.set("res", "other", px=60_000)
    lock = AsyncLock(async_client, "res", blocking_timeout_ms=None, sleep_ms=20, token_scope=TokenScope.INSTANCE)

    task = asyncio.create_task(lock.acquire())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert lock.token is None


@pytest.mark.asyncio
async def test_store_errors_propagate():
    redis = AsyncMock()
    redis.set.side_effect = RedisConnectionError("down")
    lock = AsyncLock(redis, "res", strategy=StrategyKind.TRANSACTION)

    with pytest.raises(LockOperationError):
        await lock.acquire()
    assert lock.token is None


@pytest.mark.asyncio
async def test_manager_lock_context(async_client):
    manager = RedisLockManager(settings=LockSettings(blocking=False, key_prefix="lock:"), redis=async_client)

    async with manager.lock("book:s-1") as acquired:
        assert acquired is True
        assert await async_client.exists("lock:book:s-1") == 1
        async with manager.lock("book:s-1") as second:
            assert second is False

    assert await async_client.exists("lock:book:s-1") == 0


@pytest.mark.asyncio
async def test_manager_ttl_override(async_client):
    manager = RedisLockManager(settings=LockSettings(), redis=async_client)
    lock = manager.lock("job", ttl_ms=5000)

    assert lock.ttl_ms == 5000
    assert await lock.acquire()
    assert 1000 < await async_client.pttl("job") <= 5000
    await lock.release()


def test_from_settings_maps_thread_scope_to_instance(async_client):
    lock = AsyncLock.from_settings(async_client, "job", LockSettings(token_scope="thread"))
    assert lock._token.scope is TokenScope.INSTANCE

    lock = AsyncLock.from_settings(async_client, "job", LockSettings(token_scope="context"))
    assert lock._token.scope is TokenScope.CONTEXT


def test_default_scope_is_instance(async_client):
    assert AsyncLock(async_client, "job")._token.scope is TokenScope.INSTANCE


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", KINDS)
async def test_acquire_inside_wait_for_keeps_token(async_client, kind):
    lock = AsyncLock(async_client, "job", strategy=kind)

    assert await asyncio.wait_for(lock.acquire(), timeout=1) is True
    assert lock.token is not None
    assert await lock.owned()

    await lock.release()
    assert await async_client.exists("job") == 0


@pytest.mark.asyncio
async def test_acquire_in_created_task_keeps_token(async_client):
    lock = AsyncLock(async_client, "job")

    assert await asyncio.create_task(lock.acquire()) is True
    await lock.release()
    assert await async_client.exists("job") == 0


@pytest.mark.asyncio
async def test_lock_cycles_do_not_grow_context(async_client):
    manager = RedisLockManager(settings=LockSettings(), redis=async_client)

    def cycle_locks():
        yield manager.lock("job")
        yield AsyncLock(async_client, "job", token_scope=TokenScope.CONTEXT)

    for lock in cycle_locks():
        async with lock:
            pass
    baseline = len(contextvars.copy_context())

    for _ in range(500):
        for lock in cycle_locks():
            async with lock as acquired:
                assert acquired is True

    assert len(contextvars.copy_context()) == baseline


def script_client(**evalsha) -> AsyncMock:
    client = AsyncMock()
    client.evalsha = AsyncMock(**evalsha)
    return client


@pytest.mark.asyncio
async def test_async_script_registration_is_lazy_and_retried_after_failure():
    client = script_client(return_value=1)
    client.script_load.side_effect = [RedisConnectionError("down"), "sha-acquire"]
    strategy = AsyncScriptStrategy(client)

    client.script_load.assert_not_awaited()
    with pytest.raises(LockOperationError):
        await strategy.try_acquire("res", "tok-1", 1000)
    client.evalsha.assert_not_awaited()

    assert await strategy.try_acquire("res", "tok-1", 1000) is True
    assert client.script_load.await_count == 2
    client.evalsha.assert_awaited_once_with("sha-acquire", 1, "res", "tok-1", 1000)

    await strategy.try_acquire("res", "tok-1", 1000)
    assert client.script_load.await_count == 2


@pytest.mark.asyncio
async def test_async_script_is_reloaded_after_noscript():
    client = script_client(side_effect=[NoScriptError("NOSCRIPT No matching script"), 1])
    client.script_load.side_effect = ["sha-old", "sha-new"]

    assert await AsyncScriptStrategy(client).release("res", "tok-1") is True
    assert client.evalsha.await_args_list[-1].args == ("sha-new", 1, "res", "tok-1")


@pytest.mark.asyncio
async def test_async_empty_sha_is_rejected():
    client = script_client(return_value=1)
    client.script_load.return_value = None

    with pytest.raises(LockOperationError):
        await AsyncScriptStrategy(client).extend("res", "tok-1", 100)
    client.evalsha.assert_not_awaited()


@pytest.mark.asyncio
async def test_release_store_error_with_script():
    client = script_client(side_effect=[1, RedisConnectionError("down")])
    client.script_load.side_effect = ["sha-acquire", "sha-release"]
    lock = AsyncLock(client, "res", strategy=StrategyKind.SCRIPT)

    assert await lock.acquire() is True
    with pytest.raises(LockOperationError) as info:
        await lock.release()
    assert info.value.operation == "release"
    assert lock.token is None


@pytest.mark.asyncio
async def test_release_store_error_with_transaction():
    pipe = AsyncMock()
    pipe.watch.side_effect = RedisConnectionError("down")
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.pipeline.return_value.__aenter__.return_value = pipe
    lock = AsyncLock(client, "res", strategy=StrategyKind.TRANSACTION)

    assert await lock.acquire() is True
    with pytest.raises(LockOperationError) as info:
        await lock.release()
    assert info.value.operation == "release"
    assert lock.token is None
