"""Heartbeat: periodic internal turns for sessions that have tools.

Every ``tick_s`` the service walks the sessions and enqueues an internal
``source="heartbeat"`` run for each one whose interval has elapsed.  A reply
of exactly ``HEARTBEAT_OK`` is dropped by the turn executor, so quiet
check-ins leave no trace in history.

Interval resolution: session override, then agent override, then the global
default; clamped to ``0..HEARTBEAT_MAX_INTERVAL_S`` with 0 meaning disabled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent_relay.config import HeartbeatConfig
from agent_relay.config.constants import HEARTBEAT_MAX_INTERVAL_S
from agent_relay.domain import Agent, RunMode, Session

from .ports import Repository
from .run_queue import RunQueue

logger = logging.getLogger(__name__)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_window(now: datetime, start: Optional[str], end: Optional[str]) -> bool:
    """True when ``now`` falls in ``[start, end)``; an end before start wraps past midnight."""
    if not start or not end:
        return True
    current = now.hour * 60 + now.minute
    lo, hi = _minutes(start), _minutes(end)
    if lo == hi:
        return True
    if lo < hi:
        return lo <= current < hi
    return current >= lo or current < hi


def resolve_interval(session: Session, agent: Optional[Agent], default_s: int) -> int:
    value = session.heartbeat_interval_sec
    if value is None and agent is not None:
        value = agent.heartbeat_interval_sec
    if value is None:
        value = default_s
    return max(0, min(HEARTBEAT_MAX_INTERVAL_S, int(value)))


def resolve_enabled(session: Session, agent: Optional[Agent]) -> bool:
    if session.heartbeat_enabled is not None:
        return session.heartbeat_enabled
    if agent is not None and agent.heartbeat_enabled is not None:
        return agent.heartbeat_enabled
    return True


class HeartbeatService:
    def __init__(
        self,
        config: HeartbeatConfig,
        *,
        sessions: Repository[Session],
        agents: Repository[Agent],
        run_queue: RunQueue,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._agents = agents
        self._run_queue = run_queue
        self._clock = clock
        self._tz = self._load_timezone(config.timezone)
        self._last_run: Dict[str, float] = {}
        self._task: Optional["asyncio.Task[None]"] = None

    @staticmethod
    def _load_timezone(name: Optional[str]) -> Optional[tzinfo]:
        if not name:
            return None
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown heartbeat timezone %r; using local time", name)
            return None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def in_active_window(self, now: float) -> bool:
        local = datetime.fromtimestamp(now, self._tz) if self._tz else datetime.fromtimestamp(now)
        return in_window(local, self._config.active_start, self._config.active_end)

    def tick(self, now: Optional[float] = None) -> List[str]:
        """Enqueue every due heartbeat; returns the session ids that got one."""
        now = self._clock() if now is None else now
        if not self.in_active_window(now):
            return []
        fired: List[str] = []
        for session in self._sessions.values():
            if not session.tools:
                continue
            agent = self._agents.get(session.agent_id) if session.agent_id else None
            if not resolve_enabled(session, agent):
                continue
            interval = resolve_interval(session, agent, self._config.interval_s)
            if interval <= 0:
                continue
            last = self._last_run.setdefault(session.id, session.last_active_at / 1000.0)
            if now - last < interval:
                continue
            state = self._run_queue.get_run_state(session.id)
            if state.running_run_id or state.queue_length:
                continue
            prompt = (agent.heartbeat_prompt if agent else None) or self._config.prompt
            self._run_queue.enqueue(
                session.id,
                prompt,
                source="heartbeat",
                internal=True,
                mode=RunMode.COLLECT,
                dedupe_key=f"heartbeat:{session.id}",
            )
            self._last_run[session.id] = now
            fired.append(session.id)
        if fired:
            logger.debug("Heartbeat enqueued for %d session(s)", len(fired))
        return fired

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_s)
            try:
                self.tick()
            except Exception:
                logger.exception("Heartbeat tick failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="heartbeat")
        logger.info("Heartbeat started (tick=%.1fs, interval=%ds)", self._config.tick_s, self._config.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Heartbeat stopped")
