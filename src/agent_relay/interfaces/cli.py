"""CLI: Typer app over the orchestrator."""

from __future__ import annotations

import asyncio
import logging
import secrets
import sys
from typing import List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from agent_relay.config import load_config
from agent_relay.domain import RelayError, RunCancelledError, Session, StreamEvent
from agent_relay.infrastructure.orchestrator_factory import build_orchestrator
from agent_relay.infrastructure.telemetry import setup_telemetry, shutdown_telemetry

app = typer.Typer(help="agent-relay: run queue, turn executor and platform connectors for AI agents.")
sessions_app = typer.Typer(help="Create and list sessions.")
credentials_app = typer.Typer(help="Manage provider API keys.")
connectors_app = typer.Typer(help="Inspect platform connectors.")
tasks_app = typer.Typer(help="Manage board tasks run by agents.")
app.add_typer(sessions_app, name="sessions")
app.add_typer(credentials_app, name="credentials")
app.add_typer(connectors_app, name="connectors")
app.add_typer(tasks_app, name="tasks")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _render_stream_event(console: Console, event: StreamEvent) -> None:
    """Render one turn event to the terminal while the turn streams."""
    data = event.data
    if event.kind == "delta":
        console.print(data.get("text", ""), end="", markup=False, highlight=False)
    elif event.kind == "replace":
        console.print(f"\n[dim]↺ reply replaced[/dim]\n{data.get('text', '')}")
    elif event.kind == "tool_call":
        console.print(f"\n[yellow]⚙ {data.get('name', '?')}[/yellow]({str(data.get('input', ''))[:80]})")
    elif event.kind == "tool_result":
        console.print(f"[green]✓ {data.get('name', '?')}[/green]: {str(data.get('output', ''))[:120]}")
    elif event.kind == "error":
        console.print(f"\n[red]✗ {data.get('text', '')}[/red]")
    elif event.kind == "meta" and "failover" in data:
        hop = data["failover"]
        console.print(f"\n[magenta]⇄ failover[/magenta] {hop.get('from')} → {hop.get('to')}")


@app.command()
def serve(host: str = "127.0.0.1", port: int = 8787) -> None:
    """Run the HTTP API (FastAPI + uvicorn)."""
    import uvicorn
    uvicorn.run("agent_relay.interfaces.http_api:app", host=host, port=port, reload=False)


@app.command()
def chat(
    session_id: str = typer.Argument(..., help="Session to talk to."),
    message: str = typer.Argument(..., help="User message."),
) -> None:
    """Run one turn through the run queue and stream its events."""
    config = load_config()
    setup_telemetry(config)
    orchestrator = build_orchestrator(config)
    if orchestrator.sessions.get(session_id) is None:
        rprint(f"[red]Session not found: {session_id}[/red]")
        sys.exit(1)
    console = Console()

    async def _run():
        queued = orchestrator.run_queue.enqueue(
            session_id,
            message,
            source="cli",
            on_event=lambda event: _render_stream_event(console, event),
        )
        try:
            return await queued.future
        finally:
            await orchestrator.shutdown()

    try:
        result = asyncio.run(_run())
    except RunCancelledError as e:
        rprint(f"\n[yellow]Run cancelled: {e.reason}[/yellow]")
        sys.exit(1)
    finally:
        shutdown_telemetry()
    console.print()
    if result.error:
        rprint(f"[red]{result.error}[/red]")
        sys.exit(1)


# ---------------------------------------------------------------------------
# relay sessions
# ---------------------------------------------------------------------------

@sessions_app.command("new")
def sessions_new(
    name: str = typer.Argument(..., help="Display name."),
    provider: str = typer.Option("ollama", "--provider", "-p", help="Provider id (see the provider table)."),
    model: str = typer.Option("", "--model", "-m"),
    credential: Optional[str] = typer.Option(None, "--credential", "-c", help="Credential id for the API key."),
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Inherit provider, model and tools from an agent."),
    tools: List[str] = typer.Option([], "--tool", "-t", help="Enable a tool (repeatable)."),
) -> None:
    """Create a session and print its id."""
    orchestrator = build_orchestrator(load_config())
    session_id = secrets.token_hex(6)
    if agent:
        owner = orchestrator.agents.get(agent)
        if owner is None:
            rprint(f"[red]Agent not found: {agent}[/red]")
            sys.exit(1)
        session = owner.new_session(session_id, name)
    else:
        try:
            orchestrator.catalog.get(provider)
        except RelayError as e:
            rprint(f"[red]{e}[/red]")
            sys.exit(1)
        session = Session(id=session_id, name=name, provider=provider, model=model, credential_id=credential)
    if tools:
        session.tools = list(tools)
    orchestrator.sessions.put(session)
    rprint(f"[green]Created session[/green] {session.id} ({session.provider}/{session.model or 'default'})")


@sessions_app.command("list")
def sessions_list() -> None:
    """List stored sessions."""
    orchestrator = build_orchestrator(load_config())
    sessions = orchestrator.sessions.values()
    if not sessions:
        rprint("[dim]No sessions yet. Create one with: relay sessions new NAME[/dim]")
        return
    table = Table(title="Sessions", show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Provider", style="green")
    table.add_column("Model")
    table.add_column("Tools", style="dim")
    table.add_column("Messages", justify="right")
    for s in sorted(sessions, key=lambda s: s.last_active_at, reverse=True):
        table.add_row(s.id, s.name, s.provider, s.model or "-", ", ".join(s.tools) or "-", str(len(s.messages)))
    Console().print(table)


# ---------------------------------------------------------------------------
# relay credentials
# ---------------------------------------------------------------------------

@credentials_app.command("add")
def credentials_add(
    provider: str = typer.Argument(..., help="Provider id the key belongs to."),
    name: str = typer.Argument(..., help="Label for the key."),
    api_key: str = typer.Option(..., "--api-key", prompt=True, hide_input=True),
) -> None:
    """Store an API key encrypted at rest and print its credential id."""
    orchestrator = build_orchestrator(load_config())
    try:
        credential = orchestrator.vault.add(provider, name, api_key)
    except RelayError as e:
        rprint(f"[red]{e}[/red]")
        sys.exit(1)
    rprint(f"[green]Stored credential[/green] {credential.id} for {provider}")


# ---------------------------------------------------------------------------
# relay connectors
# ---------------------------------------------------------------------------

@connectors_app.command("list")
def connectors_list() -> None:
    """List configured connectors with their persisted status."""
    orchestrator = build_orchestrator(load_config())
    connectors = orchestrator.connector_store.values()
    if not connectors:
        rprint("[dim]No connectors configured.[/dim]")
        return
    table = Table(title="Connectors", show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Platform", style="green")
    table.add_column("Agent")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Last error", overflow="fold", style="red")
    for c in connectors:
        table.add_row(
            c.id, c.name, c.platform, c.agent_id,
            "yes" if c.is_enabled else "no", c.status.value, c.last_error or "",
        )
    Console().print(table)


# ---------------------------------------------------------------------------
# relay tasks
# ---------------------------------------------------------------------------

@tasks_app.command("add")
def tasks_add(
    title: str = typer.Argument(..., help="Short task title."),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent id that runs the task."),
    description: str = typer.Option("", "--description", "-d", help="What the agent should do."),
    queue: bool = typer.Option(False, "--queue", "-q", help="Queue it now; a running server picks it up on boot."),
) -> None:
    """Create a task (in the backlog unless --queue) and print its id."""
    orchestrator = build_orchestrator(load_config())
    try:
        task = orchestrator.tasks.create_task(title, agent, description, queued=queue)
    except RelayError as e:
        rprint(f"[red]{e}[/red]")
        sys.exit(1)
    rprint(f"[green]Created task[/green] {task.id} ({task.status.value})")


@tasks_app.command("list")
def tasks_list(
    include_archived: bool = typer.Option(False, "--all", help="Include archived tasks."),
) -> None:
    orchestrator = build_orchestrator(load_config())
    tasks = orchestrator.tasks.list_tasks(include_archived=include_archived)
    if not tasks:
        rprint("[dim]No tasks yet. Create one with: relay tasks add TITLE --agent AGENT_ID[/dim]")
        return
    table = Table(title="Tasks", show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Agent")
    table.add_column("Status", style="green")
    table.add_column("Result / error", overflow="fold")
    for t in tasks:
        table.add_row(t.id, t.title, t.agent_id, t.status.value, (t.error or t.result or "")[:80])
    Console().print(table)
