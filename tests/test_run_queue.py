"""Tests for the run queue coordinator.

Covers single-flight per execution key, FIFO order, dedupe, steer/collect
modes, cancellation, runtime budgets and run-record bookkeeping.
"""
from __future__ import annotations

import asyncio
import random
from typing import Dict, List

import pytest

from agent_relay.application.run_queue import RunQueue, message_preview
from agent_relay.domain import (
    AbortSignal,
    RunCancelledError,
    RunMode,
    RunStatus,
    TurnRequest,
    TurnResult,
    ValidationError,
)
from tests.conftest import make_session


class GatedExecutor:
    """Executes turns one gate at a time and records concurrency per session key."""

    def __init__(self, auto: bool = False) -> None:
        self.auto = auto
        self.started: List[TurnRequest] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.active: Dict[str, int] = {}
        self.max_active: Dict[str, int] = {}

    def release(self, run_id: str) -> None:
        self.gates.setdefault(run_id, asyncio.Event()).set()

    async def __call__(self, request: TurnRequest, signal: AbortSignal, on_event) -> TurnResult:
        key = request.session_id
        self.started.append(request)
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active[key] = max(self.max_active.get(key, 0), self.active[key])
        try:
            if self.auto:
                await asyncio.sleep(random.random() / 1000)
            else:
                gate = self.gates.setdefault(request.run_id, asyncio.Event())
                waiters = [asyncio.ensure_future(gate.wait()), asyncio.ensure_future(signal.wait())]
                _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                for waiter in pending:
                    waiter.cancel()
            signal.raise_if_aborted()
            return TurnResult(text=f"reply to {request.message}", persisted=True)
        finally:
            self.active[key] -= 1


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def queue_for(stores):
    def build(executor, **kwargs) -> RunQueue:
        return RunQueue(executor, stores.sessions, **kwargs)
    return build


# ---------------------------------------------------------------------------
# Admission and ordering
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_enqueue_rejects_missing_session_id(queue_for):
    queue = queue_for(GatedExecutor(auto=True))
    with pytest.raises(ValidationError):
        queue.enqueue("", "hello")
    with pytest.raises(ValidationError):
        queue.enqueue("s1", "   ")


@pytest.mark.asyncio
async def test_single_flight_and_fifo_per_session(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)

    first = queue.enqueue("s1", "one")
    second = queue.enqueue("s1", "two")
    assert first.position == 0
    assert second.position == 1
    await _settle()
    assert [r.message for r in executor.started] == ["one"]
    assert queue.get_run_state("s1").running_run_id == first.run_id
    assert queue.get_run_state("s1").queue_length == 1

    executor.release(first.run_id)
    assert (await first.future).text == "reply to one"
    await _settle()
    assert [r.message for r in executor.started] == ["one", "two"]

    executor.release(second.run_id)
    await second.future
    assert executor.max_active["s1"] == 1


@pytest.mark.asyncio
async def test_different_sessions_run_concurrently(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)
    a = queue.enqueue("a", "hi")
    b = queue.enqueue("b", "hi")
    await _settle()
    assert {r.session_id for r in executor.started} == {"a", "b"}
    executor.release(a.run_id)
    executor.release(b.run_id)
    await asyncio.gather(a.future, b.future)


@pytest.mark.asyncio
async def test_sessions_of_one_agent_share_execution_key(queue_for, stores):
    stores.sessions.put(make_session("s1", agent_id="agent-1"))
    stores.sessions.put(make_session("s2", agent_id="agent-1"))
    executor = GatedExecutor()
    queue = queue_for(executor)

    first = queue.enqueue("s1", "one")
    second = queue.enqueue("s2", "two")
    await _settle()
    assert queue.execution_key("s2") == "agent:agent-1"
    assert [r.session_id for r in executor.started] == ["s1"]
    assert second.position == 1

    executor.release(first.run_id)
    await first.future
    await _settle()
    executor.release(second.run_id)
    await second.future


@pytest.mark.asyncio
async def test_fuzzed_concurrent_enqueues_keep_single_flight(queue_for):
    executor = GatedExecutor(auto=True)
    queue = queue_for(executor)
    futures = []
    for i in range(60):
        session = random.choice(["a", "b", "c"])
        futures.append(queue.enqueue(session, f"m{i}").future)
        if i % 7 == 0:
            await asyncio.sleep(0)
    await asyncio.gather(*futures)
    assert all(peak == 1 for peak in executor.max_active.values())


# ---------------------------------------------------------------------------
# Dedupe and modes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_dedupe_returns_same_run_and_future(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)
    first = queue.enqueue("s1", "beat", dedupe_key="heartbeat:s1", internal=True)
    again = queue.enqueue("s1", "beat", dedupe_key="heartbeat:s1", internal=True)
    assert again.deduped is True
    assert again.run_id == first.run_id
    assert again.future is first.future
    executor.release(first.run_id)
    await first.future


@pytest.mark.asyncio
async def test_internal_runs_default_to_collect(queue_for):
    queue = queue_for(GatedExecutor(auto=True))
    chat = queue.enqueue("s1", "hi")
    beat = queue.enqueue("s1", "beat", internal=True)
    assert queue.get_run(chat.run_id).mode is RunMode.FOLLOWUP
    assert queue.get_run(beat.run_id).mode is RunMode.COLLECT
    await asyncio.gather(chat.future, beat.future)


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected(queue_for):
    queue = queue_for(GatedExecutor(auto=True))
    with pytest.raises(ValidationError):
        queue.enqueue("s1", "hi", mode="shout")


@pytest.mark.asyncio
async def test_steer_cancels_running_and_queued(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)
    running = queue.enqueue("s1", "one")
    queued = queue.enqueue("s1", "two")
    await _settle()

    steer = queue.enqueue("s1", "urgent", mode="steer")

    with pytest.raises(RunCancelledError) as running_exc:
        await running.future
    with pytest.raises(RunCancelledError) as queued_exc:
        await queued.future
    assert running_exc.value.reason == "Cancelled by steer mode"
    assert queued_exc.value.reason == "Cancelled by steer mode"
    assert queue.get_run(queued.run_id).status is RunStatus.CANCELLED

    await _settle()
    executor.release(steer.run_id)
    assert (await steer.future).text == "reply to urgent"


# ---------------------------------------------------------------------------
# Cancellation and budgets
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_session_runs_counts(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)
    running = queue.enqueue("s1", "one")
    queued = queue.enqueue("s1", "two")
    other = queue.enqueue("s2", "three")
    await _settle()

    counts = queue.cancel_session_runs("s1", "user stop")
    assert counts.cancelled_queued == 1
    assert counts.cancelled_running == 1

    for entry in (running, queued):
        with pytest.raises(RunCancelledError):
            await entry.future
    assert queue.get_run(running.run_id).error == "user stop"

    executor.release(other.run_id)
    await other.future


@pytest.mark.asyncio
async def test_max_runtime_aborts_run(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)
    entry = queue.enqueue("s1", "slow", max_runtime_ms=20)
    with pytest.raises(RunCancelledError) as exc:
        await entry.future
    assert "max runtime" in exc.value.reason
    assert queue.get_run(entry.run_id).status is RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_failed_result_marks_record_failed(queue_for):
    async def failing(request, signal, on_event):
        return TurnResult(text="", persisted=False, error="boom")

    queue = queue_for(failing)
    entry = queue.enqueue("s1", "hi")
    result = await entry.future
    assert result.error == "boom"
    assert queue.get_run(entry.run_id).status is RunStatus.FAILED


@pytest.mark.asyncio
async def test_escaping_exception_rejects_future_and_queue_continues(queue_for):
    calls = []

    async def flaky(request, signal, on_event):
        calls.append(request.message)
        if request.message == "bad":
            raise RuntimeError("executor bug")
        return TurnResult(text="fine", persisted=True)

    queue = queue_for(flaky)
    bad = queue.enqueue("s1", "bad")
    good = queue.enqueue("s1", "good")
    with pytest.raises(RuntimeError):
        await bad.future
    assert (await good.future).text == "fine"
    assert calls == ["bad", "good"]


@pytest.mark.asyncio
async def test_shutdown_cancels_everything_and_refuses_new_runs(queue_for):
    executor = GatedExecutor()
    queue = queue_for(executor)
    running = queue.enqueue("s1", "one")
    queued = queue.enqueue("s1", "two")
    await _settle()

    await queue.shutdown()
    for entry in (running, queued):
        with pytest.raises(RunCancelledError):
            await entry.future
    with pytest.raises(ValidationError):
        queue.enqueue("s1", "three")


# ---------------------------------------------------------------------------
# Records and events
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_run_meta_events_follow_lifecycle(queue_for):
    statuses = []

    def on_event(event):
        if event.kind == "meta" and "run" in event.data:
            statuses.append(event.data["run"]["status"])

    queue = queue_for(GatedExecutor(auto=True))
    await queue.enqueue("s1", "hi", on_event=on_event).future
    assert statuses == ["queued", "running", "completed"]


@pytest.mark.asyncio
async def test_list_runs_filters_and_evicts(queue_for):
    queue = queue_for(GatedExecutor(auto=True), max_recent_runs=3)
    entries = [queue.enqueue("s1" if i % 2 else "s2", f"m{i}") for i in range(5)]
    await asyncio.gather(*(e.future for e in entries))

    runs = queue.list_runs()
    assert len(runs) == 3
    assert runs[0].id == entries[-1].run_id
    assert queue.get_run(entries[0].run_id) is None
    assert all(r.session_id == "s2" for r in queue.list_runs(session_id="s2"))
    assert len(queue.list_runs(status="completed", limit=1)) == 1


def test_message_preview_collapses_whitespace():
    assert message_preview("  hello\n\n  world  ") == "hello world"
    assert len(message_preview("x" * 500)) == 140
