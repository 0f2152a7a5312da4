"""Tests for KeyedLock: per-key exclusion and abandoning stale holders."""
from __future__ import annotations

import asyncio

import pytest

from agent_relay.infrastructure.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_exclusive():
    lock = KeyedLock(wait_timeout_s=1.0)
    order = []

    async def worker(name: str) -> None:
        async with lock.hold("c1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_do_not_block():
    lock = KeyedLock(wait_timeout_s=1.0)
    async with lock.hold("c1"):
        async with lock.hold("c2"):
            assert lock.locked("c1")
            assert lock.locked("c2")


@pytest.mark.asyncio
async def test_waiter_abandons_wedged_holder():
    lock = KeyedLock(wait_timeout_s=0.02)
    release = asyncio.Event()
    entered = asyncio.Event()

    async def wedged() -> None:
        async with lock.hold("c1"):
            entered.set()
            await release.wait()

    holder = asyncio.ensure_future(wedged())
    await entered.wait()

    async with lock.hold("c1"):
        assert holder.done() is False

    release.set()
    await holder
    assert lock.locked("c1") is False


@pytest.mark.asyncio
async def test_lock_entries_are_dropped_when_idle():
    lock = KeyedLock(wait_timeout_s=1.0)
    async with lock.hold("c1"):
        pass
    assert lock._locks == {}
    assert lock._refs == {}


@pytest.mark.asyncio
async def test_exception_inside_hold_releases_lock():
    lock = KeyedLock(wait_timeout_s=1.0)
    with pytest.raises(RuntimeError):
        async with lock.hold("c1"):
            raise RuntimeError("start failed")
    async with lock.hold("c1", timeout_s=0.01):
        assert lock.locked("c1")


@pytest.mark.asyncio
async def test_waiters_abandoning_same_holder_take_turns():
    lock = KeyedLock(wait_timeout_s=0.05)
    release = asyncio.Event()
    entered = asyncio.Event()
    inside = 0
    peak = 0

    async def wedged() -> None:
        async with lock.hold("c1"):
            entered.set()
            await release.wait()

    async def waiter() -> None:
        nonlocal inside, peak
        async with lock.hold("c1"):
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    holder = asyncio.ensure_future(wedged())
    await entered.wait()
    await asyncio.gather(waiter(), waiter())

    assert peak == 1
    release.set()
    await holder
    assert lock._locks == {}
