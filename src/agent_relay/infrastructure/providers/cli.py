"""Subprocess-backed providers: coding-agent CLIs driven non-interactively.

Each flavour builds an argv, writes the prompt to stdin and parses stdout
line by line.  The abort signal is checked between lines; once observed the
process is terminated.  Resume identifiers reported by the CLI are surfaced
as ``meta`` events (``{"resume": {provider_id: id}}``) and persisted by the
turn executor, so the next turn continues the same CLI conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from agent_relay.domain import (
    ChatRequest,
    EventCallback,
    ProviderError,
    ProviderInfo,
    RunCancelledError,
    delta_event,
    error_event,
    meta_event,
    replace_event,
    tool_call_event,
)

logger = logging.getLogger(__name__)

_STDERR_KEEP_CHARS = 16_000
_TERMINATE_GRACE_S = 5.0


@dataclass
class _CliState:
    text: str = ""
    events: int = 0


def _prompt_with_system(request: ChatRequest) -> str:
    if request.system_prompt:
        return f"{request.system_prompt}\n\n---\n\n{request.message}"
    return request.message


class CliStreamer:
    """Runs ``claude``, ``codex`` or ``opencode`` for one turn."""

    _BINARIES = {"claude-cli": "claude", "codex-cli": "codex", "opencode-cli": "opencode"}

    def __init__(self, info: ProviderInfo) -> None:
        if info.id not in self._BINARIES:
            raise ValueError(f"No CLI flavour for provider {info.id!r}")
        self._info = info

    # ------------------------------------------------------------------
    # Command lines
    # ------------------------------------------------------------------

    def _command(self, request: ChatRequest) -> Tuple[List[str], str]:
        session = request.session
        resume_id = session.resume_ids.get(self._info.id)
        if self._info.id == "claude-cli":
            args = ["--print", "--output-format", "stream-json", "--verbose", "--dangerously-skip-permissions"]
            if resume_id:
                args += ["--resume", resume_id]
            if session.model:
                args += ["--model", session.model]
            if request.system_prompt and not resume_id:
                args += ["--system-prompt", request.system_prompt]
            return args, request.message
        if self._info.id == "codex-cli":
            args = ["exec"]
            if resume_id:
                args += ["resume", resume_id]
            args += ["--json", "--full-auto", "--skip-git-repo-check"]
            if session.model:
                args += ["-m", session.model]
            if request.image_path:
                args += ["-i", request.image_path]
            args.append("-")
            return args, request.message if resume_id else _prompt_with_system(request)
        # opencode prints plain text and takes the prompt as an argument
        return ["run", _prompt_with_system(request)], ""

    def _env(self, request: ChatRequest) -> Dict[str, str]:
        env = dict(os.environ)
        if request.api_key:
            key_var = {"claude-cli": "ANTHROPIC_API_KEY", "codex-cli": "OPENAI_API_KEY"}.get(self._info.id)
            if key_var:
                env[key_var] = request.api_key
        return env

    # ------------------------------------------------------------------
    # Output parsing
    # ------------------------------------------------------------------

    def _handle_line(self, line: str, state: _CliState, on_event: EventCallback) -> None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            state.text += line + "\n"
            on_event(delta_event(line + "\n"))
            return
        if not isinstance(event, dict):
            return
        state.events += 1
        if self._info.id == "claude-cli":
            self._handle_claude(event, state, on_event)
        elif self._info.id == "codex-cli":
            self._handle_codex(event, state, on_event)

    def _handle_claude(self, ev: Dict[str, Any], state: _CliState, on_event: EventCallback) -> None:
        if ev.get("session_id"):
            on_event(meta_event(resume={self._info.id: ev["session_id"]}))
        kind = ev.get("type")
        if kind == "result" and ev.get("result"):
            state.text = ev["result"]
            on_event(replace_event(ev["result"]))
        elif kind == "assistant":
            for block in (ev.get("message") or {}).get("content") or []:
                if block.get("type") == "text" and block.get("text"):
                    state.text = block["text"]
                    on_event(replace_event(block["text"]))
                elif block.get("type") == "tool_use":
                    on_event(tool_call_event(block.get("name", "?"), json.dumps(block.get("input") or {})))
        elif kind == "content_block_delta":
            text = (ev.get("delta") or {}).get("text")
            if text:
                state.text += text
                on_event(delta_event(text))

    def _handle_codex(self, ev: Dict[str, Any], state: _CliState, on_event: EventCallback) -> None:
        kind = ev.get("type")
        item = ev.get("item") or {}
        if kind == "thread.started" and ev.get("thread_id"):
            on_event(meta_event(resume={self._info.id: ev["thread_id"]}))
        elif kind == "item.content_part.delta" and (ev.get("delta") or {}).get("text"):
            state.text += ev["delta"]["text"]
            on_event(delta_event(ev["delta"]["text"]))
        elif kind == "item.completed" and item.get("type") == "agent_message" and item.get("text"):
            state.text = item["text"]
            on_event(replace_event(item["text"]))
        elif kind == "item.completed" and item.get("type") == "message" and item.get("role") == "assistant":
            content = item.get("content")
            if isinstance(content, list):
                text = "".join(c.get("text", "") for c in content if c.get("type") == "output_text")
            else:
                text = content if isinstance(content, str) else ""
            if text:
                state.text = text
                on_event(replace_event(text))
        elif kind == "error" and ev.get("message"):
            on_event(error_event(str(ev["message"])))
        elif kind == "turn.failed" and (ev.get("error") or {}).get("message"):
            on_event(error_event(str(ev["error"]["message"])))

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    async def stream_chat(self, request: ChatRequest, on_event: EventCallback) -> str:
        binary = self._BINARIES[self._info.id]
        exe = shutil.which(binary)
        if exe is None:
            raise ProviderError(f"{binary} CLI not found on PATH", retryable=False)
        args, stdin_text = self._command(request)
        logger.info("Spawning %s for session=%s (%d args)", binary, request.session.id, len(args))

        proc = await asyncio.create_subprocess_exec(
            exe, *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(request),
        )
        assert proc.stdin is not None and proc.stdout is not None and proc.stderr is not None
        if stdin_text:
            proc.stdin.write(stdin_text.encode())
            await proc.stdin.drain()
        proc.stdin.close()

        stderr_task = asyncio.create_task(proc.stderr.read())
        state = _CliState()
        try:
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                if request.signal is not None and request.signal.aborted:
                    await _terminate(proc)
                    request.signal.raise_if_aborted()
                line = raw.decode(errors="replace").rstrip("\n")
                if line.strip():
                    self._handle_line(line, state, on_event)
            code = await proc.wait()
        except (RunCancelledError, asyncio.CancelledError):
            await _terminate(proc)
            raise
        finally:
            stderr_bytes = await _finish_stderr(stderr_task)

        stderr_text = stderr_bytes.decode(errors="replace")[-_STDERR_KEEP_CHARS:].strip()
        logger.info("%s exited code=%s events=%d response=%dchars", binary, code, state.events, len(state.text))
        if code != 0 and not state.text.strip():
            detail = f": {stderr_text[:1200]}" if stderr_text else " and returned no output."
            raise ProviderError(f"{binary} exited with code {code}{detail}")
        return state.text


async def _terminate(proc: "asyncio.subprocess.Process") -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_S)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        logger.warning("CLI process %s ignored SIGTERM; killing", proc.pid)
        proc.kill()


async def _finish_stderr(task: "asyncio.Task[bytes]") -> bytes:
    if not task.done():
        try:
            return await asyncio.wait_for(task, timeout=_TERMINATE_GRACE_S)
        except asyncio.TimeoutError:
            task.cancel()
            return b""
    return task.result() if not task.cancelled() else b""
