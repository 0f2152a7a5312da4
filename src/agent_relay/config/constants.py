"""Named constants for values that appear in multiple places or need explanation.

Each constant has a comment saying what the value controls, so a change can be
judged without grepping for side-effects.  Values that operators may want to
tune are mirrored as defaults in ``config/schema.py``.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Run queue
# ---------------------------------------------------------------------------

# Number of run records kept in the in-memory history ring.  Oldest records
# are evicted first; queued/running entries keep their own reference.
MAX_RECENT_RUNS: int = 500

# Characters of the inbound message stored on a RunRecord (after collapsing
# whitespace).  Enough to recognise a run in a listing.
RUN_PREVIEW_CHARS: int = 140

# Characters of the final reply stored on a completed RunRecord.
RUN_RESULT_PREVIEW_CHARS: int = 280

# list_runs() limit bounds and default.
LIST_RUNS_DEFAULT_LIMIT: int = 200
LIST_RUNS_MAX_LIMIT: int = 1000

# Reason recorded on entries cancelled by a steer-mode enqueue.
STEER_CANCEL_REASON: str = "Cancelled by steer mode"

# ---------------------------------------------------------------------------
# Reserved control tokens
# ---------------------------------------------------------------------------

# A reply equal to this (trimmed, any case) is never delivered to a platform.
NO_MESSAGE_SENTINEL: str = "NO_MESSAGE"

# An internal (heartbeat) turn answering exactly this is not written to history.
HEARTBEAT_OK_TOKEN: str = "HEARTBEAT_OK"

# ---------------------------------------------------------------------------
# Provider failover
# ---------------------------------------------------------------------------

# Upstream statuses worth retrying with a different credential: expired or
# revoked key, rate limit, transient server errors.
RETRYABLE_STATUS_CODES = frozenset({401, 429, 500, 502, 503})

# Lower-case substrings that mark an error message as retryable when the
# backend did not surface a status code (CLI providers, wrapped errors).
RETRYABLE_MESSAGE_MARKERS = ("rate limit", "429", "401")

# Default HTTP read timeout for a single streaming provider call.
PROVIDER_DEFAULT_TIMEOUT_S: float = 120.0

# Prior messages sent to the model with each turn.
HISTORY_LIMIT: int = 20

# Upper bound on model/tool round trips in the tool-augmented path.
TOOL_MAX_STEPS: int = 8

# ---------------------------------------------------------------------------
# Connectors
# ---------------------------------------------------------------------------

# How long start/stop waits for a pending operation on the same connector
# before abandoning the stale lock holder.
CONNECTOR_LOCK_WAIT_S: float = 15.0

# Overall budget for one connector start (token lookup, adapter start).
CONNECTOR_START_TIMEOUT_S: float = 30.0

# Delay before a bridge reconnects after an ordinary disconnect.
BRIDGE_RECONNECT_DELAY_S: float = 3.0

# Delay before a bridge restarts pairing after the remote end logged it out.
BRIDGE_RELOGIN_DELAY_S: float = 1.0

# Message shown to platform users when a turn fails outright.
CONNECTOR_ERROR_REPLY: str = "Sorry, I encountered an error processing your message."

# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------

HEARTBEAT_TICK_S: float = 5.0
HEARTBEAT_DEFAULT_INTERVAL_S: int = 120
HEARTBEAT_MAX_INTERVAL_S: int = 3600
HEARTBEAT_DEFAULT_PROMPT: str = (
    "HEARTBEAT_CHECK: review your open work and act if something needs attention. "
    f"If nothing needs doing, reply with exactly {HEARTBEAT_OK_TOKEN}."
)

# ---------------------------------------------------------------------------
# Task queue
# ---------------------------------------------------------------------------

# Characters of the final reply kept on a completed task.
TASK_RESULT_MAX_CHARS: int = 2000

# Characters of the failure message kept on a failed task.
TASK_ERROR_MAX_CHARS: int = 500
