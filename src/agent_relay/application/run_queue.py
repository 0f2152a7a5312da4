"""Run queue coordinator: single-flight turn execution per execution key.

Every trigger (chat, heartbeat, connector, delegation) submits turns through
``RunQueue.enqueue``.  Entries are kept in one FIFO per *execution key*: the
agent id when the session belongs to an agent, otherwise the session id.  At
most one entry per key runs at a time; when it finishes, the drain step pops
the next one, so the loop sustains itself without a scheduler thread.

Queue modes::

    followup: append normally (default for callers).
    collect:  append normally (default for internal triggers).
    steer:    abort this session's running entry and cancel its queued
              entries, then append.

Each entry carries an ``AbortSignal``; cancellation and the optional runtime
budget both just abort the signal and the executor notices cooperatively.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set, Union

from agent_relay.config.constants import (
    LIST_RUNS_DEFAULT_LIMIT,
    LIST_RUNS_MAX_LIMIT,
    MAX_RECENT_RUNS,
    RUN_PREVIEW_CHARS,
    RUN_RESULT_PREVIEW_CHARS,
    STEER_CANCEL_REASON,
)
from agent_relay.domain import (
    AbortSignal,
    EventCallback,
    RunCancelledError,
    RunMode,
    RunRecord,
    RunStatus,
    Session,
    StreamEvent,
    TurnRequest,
    TurnResult,
    ValidationError,
    execution_key,
    meta_event,
    now_ms,
)

from .ports import Repository

logger = logging.getLogger(__name__)

ExecuteFn = Callable[[TurnRequest, AbortSignal, EventCallback], Awaitable[TurnResult]]

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class EnqueueResult:
    run_id: str
    position: int
    future: "asyncio.Future[TurnResult]"
    deduped: bool = False


@dataclass
class RunState:
    running_run_id: Optional[str]
    queue_length: int


@dataclass
class CancelCounts:
    cancelled_queued: int
    cancelled_running: int


@dataclass
class _QueueEntry:
    record: RunRecord
    execution_key: str
    request: TurnRequest
    signal: AbortSignal
    future: "asyncio.Future[TurnResult]"
    max_runtime_ms: Optional[int] = None
    on_event: Optional[EventCallback] = None


def message_preview(message: str) -> str:
    return _WHITESPACE_RE.sub(" ", message or "").strip()[:RUN_PREVIEW_CHARS]


def _new_run_id() -> str:
    return secrets.token_hex(8)


def _mark_retrieved(future: "asyncio.Future[Any]") -> None:
    # Fire-and-forget callers never await their future; retrieving the
    # exception here keeps asyncio from logging it as unhandled.
    if not future.cancelled():
        future.exception()


def _settle(future: "asyncio.Future[Any]", result: Any = None, exc: Optional[BaseException] = None) -> None:
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)


class RunQueue:
    """Admits runs, serialises them per execution key and tracks their records.

    Args:
        execute: Coroutine function running one turn (``TurnExecutor.execute``).
        sessions: Session repository, read only to resolve execution keys.
        max_recent_runs: Size of the run-record history ring.
        default_max_runtime_ms: Budget applied when a caller passes none.
    """

    def __init__(
        self,
        execute: ExecuteFn,
        sessions: Repository[Session],
        *,
        max_recent_runs: int = MAX_RECENT_RUNS,
        default_max_runtime_ms: Optional[int] = None,
    ) -> None:
        self._execute = execute
        self._sessions = sessions
        self._max_recent_runs = max_recent_runs
        self._default_max_runtime_ms = default_max_runtime_ms
        self._queues: Dict[str, Deque[_QueueEntry]] = {}
        self._running: Dict[str, _QueueEntry] = {}
        self._runs: "OrderedDict[str, RunRecord]" = OrderedDict()
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def execution_key(self, session_id: str) -> str:
        session = self._sessions.get(session_id)
        return execution_key(session_id, session.agent_id if session is not None else None)

    def enqueue(
        self,
        session_id: str,
        message: str,
        *,
        source: str = "chat",
        internal: bool = False,
        mode: Union[RunMode, str, None] = None,
        dedupe_key: Optional[str] = None,
        max_runtime_ms: Optional[int] = None,
        image_path: Optional[str] = None,
        system_prompt_addendum: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
        delegation_chain: Sequence[str] = (),
    ) -> EnqueueResult:
        """Queue one turn and kick the drain loop.

        Must be called from inside the running event loop.  The returned
        future resolves with the ``TurnResult`` (including ordinary provider
        failures, which set ``error``) and is rejected with
        ``RunCancelledError`` when the run is cancelled or times out.
        """
        if not session_id or not session_id.strip():
            raise ValidationError("session_id is required")
        if not (message or "").strip() and not image_path:
            raise ValidationError("message is required")
        if self._closed:
            raise ValidationError("Run queue is shut down")

        run_mode = self._normalize_mode(mode, internal)

        if dedupe_key:
            existing = self._find_dedupe_match(session_id, dedupe_key)
            if existing is not None:
                logger.debug("Deduped run session=%s key=%s run=%s", session_id, dedupe_key, existing.record.id)
                return EnqueueResult(existing.record.id, self._position_of(existing), existing.future, deduped=True)

        key = self.execution_key(session_id)

        if run_mode is RunMode.STEER:
            running = self._running.get(key)
            if running is not None and running.record.session_id == session_id:
                running.signal.abort(STEER_CANCEL_REASON)
            self._cancel_queued(session_id, STEER_CANCEL_REASON)

        run_id = _new_run_id()
        record = RunRecord(
            id=run_id,
            session_id=session_id,
            source=source,
            internal=internal,
            mode=run_mode,
            status=RunStatus.QUEUED,
            message_preview=message_preview(message),
            queued_at=now_ms(),
            dedupe_key=dedupe_key,
        )
        future: "asyncio.Future[TurnResult]" = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        entry = _QueueEntry(
            record=record,
            execution_key=key,
            request=TurnRequest(
                session_id=session_id,
                message=message,
                source=source,
                internal=internal,
                image_path=image_path,
                system_prompt_addendum=system_prompt_addendum,
                run_id=run_id,
                delegation_chain=tuple(delegation_chain),
            ),
            signal=AbortSignal(),
            future=future,
            max_runtime_ms=max_runtime_ms,
            on_event=on_event,
        )
        queue = self._queues.setdefault(key, deque())
        queue.append(entry)
        self._remember(record)
        position = (1 if key in self._running else 0) + len(queue) - 1

        logger.info(
            "Queued run %s session=%s key=%s source=%s mode=%s position=%d",
            run_id, session_id, key, source, run_mode.value, position,
        )
        self._emit_run_meta(entry)
        self._drain(key)
        return EnqueueResult(run_id, position, future)

    @staticmethod
    def _normalize_mode(mode: Union[RunMode, str, None], internal: bool) -> RunMode:
        if mode is None or mode == "":
            return RunMode.COLLECT if internal else RunMode.FOLLOWUP
        try:
            return RunMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown run mode: {mode!r}") from None

    def _find_dedupe_match(self, session_id: str, dedupe_key: str) -> Optional[_QueueEntry]:
        for entry in self._running.values():
            if entry.record.session_id == session_id and entry.record.dedupe_key == dedupe_key:
                return entry
        for queue in self._queues.values():
            for entry in queue:
                if entry.record.session_id == session_id and entry.record.dedupe_key == dedupe_key:
                    return entry
        return None

    def _position_of(self, entry: _QueueEntry) -> int:
        if self._running.get(entry.execution_key) is entry:
            return 0
        queue = self._queues.get(entry.execution_key) or deque()
        offset = 1 if entry.execution_key in self._running else 0
        for index, queued in enumerate(queue):
            if queued is entry:
                return offset + index
        return 0

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    def _drain(self, key: str) -> None:
        """Start the head of ``key``'s queue if nothing is running for it.

        Safe to call any number of times: the running slot is claimed
        synchronously, before the first suspension point.
        """
        if self._closed or key in self._running:
            return
        queue = self._queues.get(key)
        if not queue:
            self._queues.pop(key, None)
            return
        entry = queue.popleft()
        if not queue:
            del self._queues[key]

        entry.record.status = RunStatus.RUNNING
        entry.record.started_at = now_ms()
        self._running[key] = entry
        self._emit_run_meta(entry)

        task = asyncio.get_running_loop().create_task(self._run_entry(key, entry), name=f"run-{entry.record.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_entry(self, key: str, entry: _QueueEntry) -> None:
        record = entry.record
        timer: Optional[asyncio.TimerHandle] = None
        budget_ms = entry.max_runtime_ms or self._default_max_runtime_ms
        if budget_ms:
            timer = asyncio.get_running_loop().call_later(
                budget_ms / 1000.0,
                entry.signal.abort,
                f"Run exceeded max runtime of {budget_ms} ms",
            )
        try:
            result = await self._execute(entry.request, entry.signal, self._event_sink(entry))
        except asyncio.CancelledError:
            self._finish(entry, RunStatus.CANCELLED, error="Run queue shut down")
            _settle(entry.future, exc=RunCancelledError("Run queue shut down"))
            raise
        except Exception as exc:  # executor-level throw that escaped its own handling
            if entry.signal.aborted or isinstance(exc, RunCancelledError):
                reason = entry.signal.reason or getattr(exc, "reason", None) or "Cancelled"
                self._finish(entry, RunStatus.CANCELLED, error=reason)
                _settle(entry.future, exc=RunCancelledError(reason))
            else:
                logger.warning("Run %s failed: %s", record.id, exc)
                self._finish(entry, RunStatus.FAILED, error=str(exc) or exc.__class__.__name__)
                _settle(entry.future, exc=exc)
        else:
            record.result_preview = (result.text or "")[:RUN_RESULT_PREVIEW_CHARS] or None
            if result.error:
                self._finish(entry, RunStatus.FAILED, error=result.error)
            else:
                self._finish(entry, RunStatus.COMPLETED)
            _settle(entry.future, result=result)
        finally:
            if timer is not None:
                timer.cancel()
            if self._running.get(key) is entry:
                del self._running[key]
            self._drain(key)

    def _finish(self, entry: _QueueEntry, status: RunStatus, error: Optional[str] = None) -> None:
        record = entry.record
        if record.status.is_terminal:
            return
        record.status = status
        record.ended_at = now_ms()
        record.error = error
        logger.info("Run %s %s session=%s%s", record.id, status.value, record.session_id, f" error={error}" if error else "")
        self._emit_run_meta(entry)

    def _event_sink(self, entry: _QueueEntry) -> EventCallback:
        def sink(event: StreamEvent) -> None:
            if entry.on_event is None:
                return
            try:
                entry.on_event(event)
            except Exception as exc:
                logger.debug("Event callback for run %s failed: %s", entry.record.id, exc)
        return sink

    def _emit_run_meta(self, entry: _QueueEntry) -> None:
        self._event_sink(entry)(meta_event(run=entry.record.to_dict()))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _cancel_queued(self, session_id: str, reason: str) -> int:
        cancelled = 0
        for key in list(self._queues):
            queue = self._queues[key]
            kept: Deque[_QueueEntry] = deque()
            for entry in queue:
                if entry.record.session_id != session_id:
                    kept.append(entry)
                    continue
                self._finish(entry, RunStatus.CANCELLED, error=reason)
                _settle(entry.future, exc=RunCancelledError(reason))
                cancelled += 1
            if kept:
                self._queues[key] = kept
            else:
                del self._queues[key]
        return cancelled

    def cancel_session_runs(self, session_id: str, reason: str = "Cancelled") -> CancelCounts:
        """Abort the session's running entry and cancel its queued entries."""
        cancelled_queued = self._cancel_queued(session_id, reason)
        cancelled_running = 0
        for entry in self._running.values():
            if entry.record.session_id == session_id and not entry.signal.aborted:
                entry.signal.abort(reason)
                cancelled_running += 1
        if cancelled_queued or cancelled_running:
            logger.info(
                "Cancelled runs for session=%s queued=%d running=%d reason=%s",
                session_id, cancelled_queued, cancelled_running, reason,
            )
        return CancelCounts(cancelled_queued=cancelled_queued, cancelled_running=cancelled_running)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _remember(self, record: RunRecord) -> None:
        self._runs[record.id] = record
        while len(self._runs) > self._max_recent_runs:
            self._runs.popitem(last=False)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def get_run_state(self, session_id: str) -> RunState:
        running_run_id = None
        for entry in self._running.values():
            if entry.record.session_id == session_id:
                running_run_id = entry.record.id
                break
        queue_length = sum(
            1 for queue in self._queues.values() for entry in queue if entry.record.session_id == session_id
        )
        return RunState(running_run_id=running_run_id, queue_length=queue_length)

    def list_runs(
        self,
        session_id: Optional[str] = None,
        status: Union[RunStatus, str, None] = None,
        limit: Optional[int] = None,
    ) -> List[RunRecord]:
        """Newest first, optionally filtered; ``limit`` is clamped to 1..1000."""
        wanted = RunStatus(status) if status else None
        cap = max(1, min(LIST_RUNS_MAX_LIMIT, limit if limit is not None else LIST_RUNS_DEFAULT_LIMIT))
        out: List[RunRecord] = []
        for record in reversed(self._runs.values()):
            if session_id and record.session_id != session_id:
                continue
            if wanted is not None and record.status is not wanted:
                continue
            out.append(record)
            if len(out) >= cap:
                break
        return out

    def running_keys(self) -> Dict[str, str]:
        """Execution key → running run id."""
        return {key: entry.record.id for key, entry in self._running.items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """Wait until every started run (and the runs they drain into) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, reason: str = "Run queue shut down") -> None:
        self._closed = True
        for session_id in {e.record.session_id for q in self._queues.values() for e in q}:
            self._cancel_queued(session_id, reason)
        for entry in list(self._running.values()):
            entry.signal.abort(reason)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
