"""Cooperative abort signal shared by the run queue, executor and backends."""

from __future__ import annotations

import asyncio
from typing import Optional

from .errors import RunCancelledError


class AbortSignal:
    """One-shot cancellation flag with a recorded reason.

    Aborting never interrupts running code; backends call ``raise_if_aborted``
    between chunks, and ``wait()`` lets a reader race the signal against I/O.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: str = "Cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason or "Cancelled")

    async def wait(self) -> None:
        await self._event.wait()
