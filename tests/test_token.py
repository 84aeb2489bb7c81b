from __future__ import annotations

import asyncio
import contextvars
import threading

import pytest

from keylock.core.token import Token, TokenScope, short


def test_generate_is_unique():
    tokens = {Token.generate() for _ in range(1000)}
    assert len(tokens) == 1000


def test_lifecycle():
    token = Token(TokenScope.INSTANCE)
    assert token.get() is None
    assert not token.is_held()

    token.set("abc")
    assert token.get() == "abc"
    assert token.is_held()

    token.clear()
    assert token.get() is None
    assert not token.is_held()


def _read_from_other_thread(token: Token) -> str | None:
    seen = {}

    def worker() -> None:
        seen["value"] = token.get()

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()
    return seen["value"]


def test_instance_scope_is_shared_between_threads():
    token = Token(TokenScope.INSTANCE)
    token.set("shared")
    assert _read_from_other_thread(token) == "shared"


def test_thread_scope_is_private_to_each_thread():
    token = Token(TokenScope.THREAD)
    token.set("mine")
    assert _read_from_other_thread(token) is None
    assert token.get() == "mine"


def test_two_thread_scoped_tokens_do_not_share_slots():
    first = Token(TokenScope.THREAD)
    second = Token(TokenScope.THREAD)
    first.set("one")
    assert second.get() is None


@pytest.mark.asyncio
async def test_context_scope_is_private_to_each_task():
    token = Token(TokenScope.CONTEXT)

    async def set_and_read(value: str) -> str | None:
        token.set(value)
        await asyncio.sleep(0)
        return token.get()

    results = await asyncio.gather(set_and_read("a"), set_and_read("b"))
    assert results == ["a", "b"]
    assert token.get() is None


def test_context_tokens_share_one_context_variable():
    warm_up = Token(TokenScope.CONTEXT)
    warm_up.set("warm-up")
    warm_up.clear()
    baseline = len(contextvars.copy_context())

    for _ in range(500):
        token = Token(TokenScope.CONTEXT)
        token.set(Token.generate())
        assert token.is_held()
        token.clear()
        assert token.get() is None

    assert len(contextvars.copy_context()) == baseline


def test_context_tokens_are_separate_per_handle():
    first = Token(TokenScope.CONTEXT)
    second = Token(TokenScope.CONTEXT)
    first.set("one")
    assert second.get() is None
    second.clear()
    assert first.get() == "one"
    first.clear()


def test_scope_accepts_plain_string():
    assert Token("instance").scope is TokenScope.INSTANCE


def test_short():
    assert short(None) == "-"
    assert short("0123456789abcdef") == "01234567"
