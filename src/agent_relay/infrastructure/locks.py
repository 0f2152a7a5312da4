"""Per-key async mutex with bounded waits.

Policy: a waiter that times out *abandons* the current holder.  The stale
lock object for that key is dropped and the waiter proceeds on a fresh one.
Only the first waiter to give up on a given lock replaces it; later waiters
queue on the replacement, so the key still has one live holder.  A wedged
start/stop delays later operations on the same key by a bounded wait per
holder but never blocks them forever.  The abandoned holder still
releases its own (now orphaned) lock when it eventually finishes.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


class KeyedLock:
    def __init__(self, wait_timeout_s: float) -> None:
        self._wait_timeout_s = wait_timeout_s
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str, timeout_s: Optional[float] = None) -> AsyncIterator[None]:
        """Hold the lock for ``key``; see the module docstring for timeout behaviour."""
        wait = self._wait_timeout_s if timeout_s is None else timeout_s
        self._refs[key] = self._refs.get(key, 0) + 1
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            while True:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=wait)
                    break
                except asyncio.TimeoutError:
                    current = self._locks.get(key)
                    if current is not None and current is not lock:
                        # Another waiter already replaced the stale lock; queue behind it.
                        lock = current
                        continue
                    logger.warning("Lock %r still held after %.1fs; abandoning stale holder", key, wait)
                    lock = asyncio.Lock()
                    self._locks[key] = lock
                    await lock.acquire()
                    break
            try:
                yield
            finally:
                lock.release()
        finally:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                del self._refs[key]
                # No holder or waiter is left for the key.
                self._locks.pop(key, None)
