"""Task queue: board work items run one at a time by their agents.

A task starts in ``backlog``.  ``enqueue_task`` moves it to ``queued`` and
wakes the worker, which takes tasks in the order they were queued.  Each run
gets a fresh session for the task's agent, seeded with a "Starting task"
message, and submits the task through the run queue with ``source="task"``,
so it is serialised with everything else that agent is doing.  The outcome
lands on the task as ``completed`` (with the reply) or ``failed`` (with the
error), and the task session's heartbeat is switched off.

Queued tasks are persisted; ``resume`` re-queues them on boot.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections import deque
from typing import Deque, List, Optional

from agent_relay.config.constants import TASK_ERROR_MAX_CHARS, TASK_RESULT_MAX_CHARS
from agent_relay.domain import (
    Agent,
    ChatMessage,
    NotFoundError,
    RelayError,
    RunCancelledError,
    Session,
    Task,
    TaskStatus,
    ValidationError,
    now_ms,
)

from .ports import Repository
from .run_queue import RunQueue

logger = logging.getLogger(__name__)

_FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def task_session_id() -> str:
    return f"task:{secrets.token_hex(6)}"


def starting_message(task: Task) -> str:
    return f"Starting task: **{task.title}**\n\n{task.description}\n\nI'll begin working on this now."


class TaskQueue:
    def __init__(
        self,
        tasks: Repository[Task],
        agents: Repository[Agent],
        sessions: Repository[Session],
        run_queue: RunQueue,
    ) -> None:
        self._tasks = tasks
        self._agents = agents
        self._sessions = sessions
        self._run_queue = run_queue
        self._pending: Deque[str] = deque()
        self._worker: Optional["asyncio.Task[None]"] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Board
    # ------------------------------------------------------------------

    def list_tasks(self, include_archived: bool = False) -> List[Task]:
        tasks = [t for t in self._tasks.values() if include_archived or t.status is not TaskStatus.ARCHIVED]
        return sorted(tasks, key=lambda t: t.created_at)

    def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def create_task(self, title: str, agent_id: str, description: str = "", *, queued: bool = False) -> Task:
        if not (title or "").strip():
            raise ValidationError("title is required")
        self._require_agent(agent_id)
        task = self._tasks.put(Task(
            id=secrets.token_hex(6),
            title=title.strip(),
            agent_id=agent_id,
            description=(description or "").strip(),
        ))
        logger.info("Created task %s %r for agent=%s", task.id, task.title, agent_id)
        if queued:
            return self.enqueue_task(task.id)
        return task

    def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> Task:
        """Edit a task's fields; only tasks that are not running can change hands."""
        task = self.get_task(task_id)
        if title is not None and not title.strip():
            raise ValidationError("title is required")
        if agent_id is not None and agent_id != task.agent_id:
            if task.status is TaskStatus.RUNNING:
                raise ValidationError("Cannot reassign a running task")
            self._require_agent(agent_id)

        def mutate(t: Task) -> None:
            if title is not None:
                t.title = title.strip()
            if description is not None:
                t.description = description.strip()
            if agent_id is not None:
                t.agent_id = agent_id
            t.updated_at = now_ms()

        return self._tasks.update(task_id, mutate)

    def enqueue_task(self, task_id: str) -> Task:
        """Queue a task for its agent.  Safe to call from outside the event loop.

        Queuing a finished task runs it again on a new session.  The worker is
        only woken when a loop is running; otherwise the persisted status is
        picked up by ``resume``.
        """
        task = self.get_task(task_id)
        if task.status is TaskStatus.RUNNING:
            raise ValidationError(f"Task is already running: {task_id}")
        if self._closed:
            raise ValidationError("Task queue is shut down")

        def mutate(t: Task) -> None:
            if t.status is not TaskStatus.QUEUED:
                t.queued_at = now_ms()
            t.status = TaskStatus.QUEUED
            t.archived_at = None
            t.updated_at = now_ms()

        task = self._tasks.update(task_id, mutate)
        if task_id not in self._pending:
            self._pending.append(task_id)
        logger.info("Queued task %s %r (pending=%d)", task_id, task.title, len(self._pending))
        self._kick()
        return task

    def move_to_backlog(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status is TaskStatus.RUNNING:
            raise ValidationError(f"Task is running: {task_id}")
        if task_id in self._pending:
            self._pending.remove(task_id)

        def mutate(t: Task) -> None:
            t.status = TaskStatus.BACKLOG
            t.queued_at = None
            t.archived_at = None
            t.updated_at = now_ms()

        return self._tasks.update(task_id, mutate)

    def archive_task(self, task_id: str) -> Task:
        """Soft-delete: the task leaves the board and the queue; a running turn is cancelled."""
        task = self.get_task(task_id)
        if task_id in self._pending:
            self._pending.remove(task_id)

        def mutate(t: Task) -> None:
            t.status = TaskStatus.ARCHIVED
            t.archived_at = now_ms()
            t.updated_at = now_ms()

        archived = self._tasks.update(task_id, mutate)
        if task.status is TaskStatus.RUNNING and task.session_id:
            self._run_queue.cancel_session_runs(task.session_id, "Task archived")
        logger.info("Archived task %s", task_id)
        return archived

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def resume(self) -> int:
        """Boot recovery.  Returns the number of tasks re-queued.

        Queued tasks go back on the queue in their original order.  A task
        left ``running`` by a previous process has lost its turn and is marked
        failed.  Sessions of finished tasks get their heartbeat switched off.
        """
        requeued = 0
        for task in sorted(self._tasks.values(), key=lambda t: t.queued_at or t.created_at):
            if task.status is TaskStatus.QUEUED:
                if task.id not in self._pending:
                    self._pending.append(task.id)
                    requeued += 1
            elif task.status is TaskStatus.RUNNING:
                self._finish(task.id, TaskStatus.FAILED, error="Interrupted by restart")
            elif task.status in _FINISHED and task.session_id:
                self._disable_heartbeat(task.session_id)
        if requeued:
            logger.info("Resumed %d queued task(s)", requeued)
            self._kick()
        return requeued

    async def join(self) -> None:
        """Wait until the worker has drained the queue."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def shutdown(self) -> None:
        self._closed = True
        self._pending.clear()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.info("Task queue shut down")

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _kick(self) -> None:
        if self._closed or (self._worker is not None and not self._worker.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._worker = loop.create_task(self._work())

    async def _work(self) -> None:
        while self._pending and not self._closed:
            task_id = self._pending.popleft()
            try:
                await self._run_task(task_id)
            except RelayError as exc:
                logger.error("Task %s could not be run: %s", task_id, exc)
                self._finish(task_id, TaskStatus.FAILED, error=str(exc))

    async def _run_task(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.QUEUED:
            return
        agent = self._agents.get(task.agent_id)
        if agent is None:
            self._finish(task_id, TaskStatus.FAILED, error=f"Agent {task.agent_id} not found")
            return

        session = agent.new_session(task_session_id(), task.title)
        session.messages.append(ChatMessage(role="assistant", text=starting_message(task)))
        self._sessions.put(session)

        def mark_running(t: Task) -> None:
            t.status = TaskStatus.RUNNING
            t.session_id = session.id
            t.started_at = now_ms()
            t.completed_at = None
            t.result = None
            t.error = None
            t.updated_at = now_ms()

        self._tasks.update(task_id, mark_running)
        logger.info("Running task %s %r with agent=%s session=%s", task_id, task.title, agent.id, session.id)

        try:
            queued = self._run_queue.enqueue(session.id, task.description or task.title, source="task")
            result = await queued.future
        except RunCancelledError as exc:
            self._finish(task_id, TaskStatus.FAILED, error=exc.reason, author=agent)
            return
        except Exception as exc:  # executor-level failure; the next task still runs
            logger.warning("Task %s run failed: %s", task_id, exc)
            self._finish(task_id, TaskStatus.FAILED, error=str(exc) or type(exc).__name__, author=agent)
            return
        finally:
            self._disable_heartbeat(session.id)

        if result.error:
            self._finish(task_id, TaskStatus.FAILED, error=result.error, author=agent)
        else:
            self._finish(task_id, TaskStatus.COMPLETED, result=result.text, author=agent)

    def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: Optional[str] = None,
        error: Optional[str] = None,
        author: Optional[Agent] = None,
    ) -> None:
        def mutate(t: Task) -> None:
            # Archived mid-run: the board no longer shows it.
            if t.status is TaskStatus.ARCHIVED:
                return
            t.status = status
            t.updated_at = now_ms()
            if status is TaskStatus.COMPLETED:
                t.result = (result or "")[:TASK_RESULT_MAX_CHARS] or None
                t.completed_at = now_ms()
                if author is not None:
                    summary = (result or "")[:TASK_RESULT_MAX_CHARS // 2] or "No summary provided."
                    t.add_comment(author.name, f"Task completed.\n\n{summary}")
            else:
                t.error = (error or "Unknown error")[:TASK_ERROR_MAX_CHARS]
                last = t.comments[-1] if t.comments else None
                repeated = last is not None and last.get("text", "").startswith("Task failed")
                if author is not None and not repeated:
                    t.add_comment(author.name, "Task failed. See the error for details.")

        task = self._tasks.update(task_id, mutate)
        if task is None:
            return
        if task.status is TaskStatus.COMPLETED:
            logger.info("Task %s %r completed", task_id, task.title)
        elif task.status is TaskStatus.FAILED:
            logger.warning("Task %s %r failed: %s", task_id, task.title, task.error)

    def _disable_heartbeat(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.heartbeat_enabled is False:
            return

        def mutate(s: Session) -> None:
            s.heartbeat_enabled = False

        self._sessions.update(session_id, mutate)
        logger.debug("Disabled heartbeat on task session %s", session_id)

    def _require_agent(self, agent_id: str) -> None:
        if not agent_id or self._agents.get(agent_id) is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
