"""HTTP API: FastAPI app over the orchestrator's run queue and connectors."""

from __future__ import annotations

import asyncio
import collections
import hmac
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from agent_relay.application.orchestrator import Orchestrator
from agent_relay.config import load_config
from agent_relay.domain import (
    NotFoundError,
    OperationTimeoutError,
    ProviderError,
    RelayError,
    RunCancelledError,
    StreamEvent,
    TaskStatus,
    ValidationError,
)
from agent_relay.infrastructure.orchestrator_factory import build_orchestrator
from agent_relay.infrastructure.telemetry import setup_telemetry, shutdown_telemetry

logger = logging.getLogger(__name__)

# Sentinel kinds closing an SSE stream; never produced by the executor.
_RUN_DONE = "_run_done_"
_RUN_ERROR = "_run_error_"

# Result watchers for open SSE streams; held so they are not collected mid-run.
_stream_watchers: set = set()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    config = load_config()
    setup_telemetry(config)
    orchestrator = build_orchestrator(config)
    app.state.orchestrator = orchestrator
    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.shutdown()
        shutdown_telemetry()


app = FastAPI(title="agent-relay", lifespan=_lifespan)


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_FOR_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (OperationTimeoutError, 504),
    (ProviderError, 502),
    (RunCancelledError, 409),
)


def status_for(exc: RelayError) -> int:
    for error_type, status in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(RelayError)
async def _relay_error_handler(request: Request, exc: RelayError):
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def _auth_middleware(request: Request, call_next):
    """Optional bearer-token authentication.

    Active only when ``RELAY_API_KEY`` is set.  Every endpoint except
    ``GET /health`` then requires ``Authorization: Bearer <key>``; the key is
    compared in constant time.
    """
    api_key = os.environ.get("RELAY_API_KEY", "").strip()
    if api_key and request.url.path != "/health":
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "detail": "Authorization: Bearer <key> header required"},
                headers={"WWW-Authenticate": "Bearer"},
            )
        token = auth_header[len("Bearer "):]
        if not hmac.compare_digest(token.encode(), api_key.encode()):
            return JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "detail": "Invalid API key"},
                headers={"WWW-Authenticate": "Bearer"},
            )
    return await call_next(request)


# Request timestamps per client IP.
_rate_limit_windows: dict = collections.defaultdict(collections.deque)

_RATE_LIMIT_EXEMPT = {"/health"}


@app.middleware("http")
async def _rate_limit_middleware(request: Request, call_next):
    """Per-IP sliding window, active when ``RELAY_RATE_LIMIT`` is a positive requests-per-minute count."""
    limit_str = os.environ.get("RELAY_RATE_LIMIT", "").strip()
    if not limit_str or request.url.path in _RATE_LIMIT_EXEMPT:
        return await call_next(request)
    try:
        limit = int(limit_str)
    except ValueError:
        return await call_next(request)
    if limit <= 0:
        return await call_next(request)

    client_ip = request.client.host if request.client else "unknown"
    window = _rate_limit_windows[client_ip]
    now = time.monotonic()
    cutoff = now - 60.0
    while window and window[0] < cutoff:
        window.popleft()

    if len(window) >= limit:
        retry_after = int(60 - (now - window[0])) + 1
        return JSONResponse(
            status_code=429,
            content={"error": "Too Many Requests", "detail": f"Rate limit: {limit} req/min"},
            headers={"Retry-After": str(retry_after)},
        )

    window.append(now)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

class RunRequest(BaseModel):
    message: str
    mode: Optional[str] = None
    dedupe_key: Optional[str] = None
    max_runtime_ms: Optional[int] = None
    image_path: Optional[str] = None
    system_prompt_addendum: Optional[str] = None
    wait: bool = False


class CancelRequest(BaseModel):
    reason: str = "Cancelled"


def _require_session(orchestrator: Orchestrator, session_id: str) -> None:
    if orchestrator.sessions.get(session_id) is None:
        raise NotFoundError(f"Session not found: {session_id}")


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/sessions/{session_id}/runs")
async def submit_run(session_id: str, req: RunRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    _require_session(orchestrator, session_id)
    logger.info("POST /sessions/%s/runs mode=%s wait=%s", session_id, req.mode, req.wait)
    queued = orchestrator.run_queue.enqueue(
        session_id,
        req.message,
        source="api",
        mode=req.mode,
        dedupe_key=req.dedupe_key,
        max_runtime_ms=req.max_runtime_ms,
        image_path=req.image_path,
        system_prompt_addendum=req.system_prompt_addendum,
    )
    out = {"run_id": queued.run_id, "position": queued.position, "deduped": queued.deduped}
    if req.wait:
        result = await queued.future
        out["result"] = result.to_dict()
    return out


async def _sse_event_generator(event_queue: "asyncio.Queue[dict]") -> AsyncIterator[str]:
    while True:
        event = await event_queue.get()
        yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
        if event.get("kind") in (_RUN_DONE, _RUN_ERROR):
            break


@app.post("/sessions/{session_id}/runs/stream")
async def stream_run(session_id: str, req: RunRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Submit a run and stream its events as Server-Sent Events.

    Each event is one JSON ``data:`` line (``{"kind": "delta", "text": ...}``
    and so on).  The stream ends with ``_run_done_`` carrying the result, or
    ``_run_error_`` when the run was cancelled or failed.
    """
    _require_session(orchestrator, session_id)
    event_queue: "asyncio.Queue[dict]" = asyncio.Queue()

    def on_event(event: StreamEvent) -> None:
        event_queue.put_nowait(event.to_dict())

    queued = orchestrator.run_queue.enqueue(
        session_id,
        req.message,
        source="api",
        mode=req.mode,
        dedupe_key=req.dedupe_key,
        max_runtime_ms=req.max_runtime_ms,
        image_path=req.image_path,
        system_prompt_addendum=req.system_prompt_addendum,
        on_event=on_event,
    )

    async def _await_result() -> None:
        try:
            result = await queued.future
        except Exception as exc:  # noqa: BLE001
            event_queue.put_nowait({
                "kind": _RUN_ERROR,
                "run_id": queued.run_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            })
            return
        event_queue.put_nowait({"kind": _RUN_DONE, "run_id": queued.run_id, "result": result.to_dict()})

    watcher = asyncio.create_task(_await_result())
    _stream_watchers.add(watcher)
    watcher.add_done_callback(_stream_watchers.discard)

    return StreamingResponse(
        _sse_event_generator(event_queue),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/sessions/{session_id}/cancel")
async def cancel_runs(session_id: str, req: Optional[CancelRequest] = None, orchestrator: Orchestrator = Depends(get_orchestrator)):
    counts = orchestrator.run_queue.cancel_session_runs(session_id, (req or CancelRequest()).reason)
    return {"cancelled_queued": counts.cancelled_queued, "cancelled_running": counts.cancelled_running}


@app.get("/sessions/{session_id}/run-state")
async def run_state(session_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    state = orchestrator.run_queue.get_run_state(session_id)
    return {"running_run_id": state.running_run_id, "queue_length": state.queue_length}


@app.get("/runs")
async def list_runs(
    session_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        records = orchestrator.run_queue.list_runs(session_id=session_id, status=status, limit=limit)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown run status: {status!r}")
    return {"runs": [r.to_dict() for r in records]}


@app.get("/runs/{run_id}")
async def get_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    record = orchestrator.run_queue.get_run(run_id)
    if record is None:
        raise NotFoundError(f"Run not found: {run_id}")
    return record.to_dict()


# ---------------------------------------------------------------------------
# Connectors
# ---------------------------------------------------------------------------

class SendRequest(BaseModel):
    text: str
    connector_id: Optional[str] = None
    platform: Optional[str] = None
    channel_id: Optional[str] = None
    image_url: Optional[str] = None


@app.get("/connectors")
async def list_connectors(orchestrator: Orchestrator = Depends(get_orchestrator)):
    running = {c["connector_id"]: c for c in orchestrator.connectors.list_running()}
    out = []
    for connector in orchestrator.connector_store.values():
        data = connector.to_dict()
        data.pop("credential_id", None)
        data["instance"] = running.get(connector.id)
        out.append(data)
    return {"connectors": out}


@app.post("/connectors/{connector_id}/start")
async def start_connector(connector_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    instance = await orchestrator.connectors.start_connector(connector_id)
    return instance.describe()


@app.post("/connectors/{connector_id}/stop")
async def stop_connector(connector_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.connectors.stop_connector(connector_id)
    return {"ok": True}


@app.post("/connectors/{connector_id}/repair")
async def repair_connector(connector_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    instance = await orchestrator.connectors.repair_connector(connector_id)
    return instance.describe()


@app.post("/connectors/send")
async def send_message(req: SendRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    receipt = await orchestrator.connectors.send_message(
        req.text,
        connector_id=req.connector_id,
        platform=req.platform,
        channel_id=req.channel_id,
        image_url=req.image_url,
    )
    if receipt is None:
        return {"status": "suppressed"}
    return {"status": "sent", **receipt.to_dict()}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskCreateRequest(BaseModel):
    title: str
    agent_id: str
    description: str = ""
    status: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    agent_id: Optional[str] = None
    status: Optional[str] = None


def _parse_task_status(value: Optional[str]) -> Optional[TaskStatus]:
    if value is None:
        return None
    try:
        status = TaskStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown task status: {value!r}")
    if status not in (TaskStatus.BACKLOG, TaskStatus.QUEUED, TaskStatus.ARCHIVED):
        raise ValidationError(f"Task status cannot be set to {value!r}")
    return status


@app.get("/tasks")
async def list_tasks(include_archived: bool = False, orchestrator: Orchestrator = Depends(get_orchestrator)):
    tasks = orchestrator.tasks.list_tasks(include_archived=include_archived)
    return {"tasks": [t.to_dict() for t in tasks]}


@app.post("/tasks")
async def create_task(req: TaskCreateRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    status = _parse_task_status(req.status)
    task = orchestrator.tasks.create_task(
        req.title, req.agent_id, req.description, queued=status is TaskStatus.QUEUED,
    )
    return task.to_dict()


@app.get("/tasks/{task_id}")
async def get_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.tasks.get_task(task_id).to_dict()


@app.put("/tasks/{task_id}")
async def update_task(task_id: str, req: TaskUpdateRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Edit a task.  ``status: queued`` hands it to the task queue; ``archived`` soft-deletes it."""
    status = _parse_task_status(req.status)
    task = orchestrator.tasks.update_task(
        task_id, title=req.title, description=req.description, agent_id=req.agent_id,
    )
    if status is TaskStatus.QUEUED and task.status is not TaskStatus.QUEUED:
        task = orchestrator.tasks.enqueue_task(task_id)
    elif status is TaskStatus.ARCHIVED:
        task = orchestrator.tasks.archive_task(task_id)
    elif status is TaskStatus.BACKLOG and task.status is not TaskStatus.BACKLOG:
        task = orchestrator.tasks.move_to_backlog(task_id)
    return task.to_dict()


@app.delete("/tasks/{task_id}")
async def archive_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    orchestrator.tasks.archive_task(task_id)
    return {"ok": True}
