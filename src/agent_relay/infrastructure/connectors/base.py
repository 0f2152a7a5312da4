"""Helpers shared by platform adapters."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


def chunk_text(text: str, limit: int, piece: Optional[int] = None) -> List[str]:
    """Split ``text`` for platforms with a per-message length cap.

    Text within ``limit`` is returned whole; longer text is cut into pieces of
    ``piece`` characters (default ``limit``).
    """
    if len(text) <= limit:
        return [text]
    size = piece or limit
    return [text[i:i + size] for i in range(0, len(text), size)]


def parse_id_list(value: Optional[str]) -> Optional[Set[str]]:
    """``"a, b"`` -> ``{"a", "b"}``; empty or missing means no restriction (``None``)."""
    items = {s.strip() for s in (value or "").split(",") if s.strip()}
    return items or None


def normalize_phone(value: str) -> str:
    """Digits of a phone number or JID user part; UK local ``07...`` becomes ``447...``."""
    user = value.split("@", 1)[0].split(":", 1)[0]
    digits = re.sub(r"\D", "", user)
    if digits.startswith("0") and len(digits) >= 10:
        digits = "44" + digits[1:]
    return digits


class InboundTasks:
    """Tracks per-message handler tasks so ``stop`` can cancel them."""

    def __init__(self, label: str) -> None:
        self._label = label
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("%s inbound handler failed: %s", self._label, task.exception())

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


def json_or_none(raw: Any) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None
