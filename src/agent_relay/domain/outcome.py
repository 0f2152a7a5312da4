"""Typed outcome of a turn's reply text.

A reply is either delivered text, deliberately suppressed (the agent answered
with the no-reply sentinel), or a heartbeat acknowledgement.  Callers match on
the type instead of comparing strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from agent_relay.config.constants import HEARTBEAT_OK_TOKEN, NO_MESSAGE_SENTINEL


@dataclass(frozen=True)
class Reply:
    text: str


@dataclass(frozen=True)
class Suppressed:
    """The agent chose to stay silent."""


@dataclass(frozen=True)
class HeartbeatOk:
    """An internal check found nothing to do."""


Outcome = Union[Reply, Suppressed, HeartbeatOk]


def is_no_message(text: str) -> bool:
    return (text or "").strip().upper() == NO_MESSAGE_SENTINEL


def is_heartbeat_ok(text: str) -> bool:
    return (text or "").strip() == HEARTBEAT_OK_TOKEN


def classify_reply(text: str, *, internal: bool = False) -> Outcome:
    """Map raw reply text onto an ``Outcome``.

    The heartbeat token only counts for internal turns; a user typing
    ``HEARTBEAT_OK`` in chat gets an ordinary reply.
    """
    if is_no_message(text):
        return Suppressed()
    if internal and is_heartbeat_ok(text):
        return HeartbeatOk()
    return Reply(text or "")
