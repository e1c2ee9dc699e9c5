"""sessionmem CLI - persistent memory for AI coding sessions."""

import asyncio
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from sessionmem import __version__
from sessionmem.config import configure_logging, load_llm_settings
from sessionmem.context.store import MemoryStore
from sessionmem.errors import SessionMemError
from sessionmem.llm.client import make_client
from sessionmem.service import MemoryService

app = typer.Typer(
    name="sessionmem",
    help="Record coding sessions and recall them as context.",
    no_args_is_help=True,
)
mcp_app = typer.Typer(help="MCP server management.")

app.add_typer(mcp_app, name="mcp")

console = Console()
err_console = Console(stderr=True)

state: dict = {"db_path": None}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"sessionmem {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    db: Annotated[
        Optional[Path], typer.Option("--db", help="Path to the memory database")
    ] = None,
    log_level: Annotated[
        Optional[str], typer.Option("--log-level", help="Logging level (default WARNING)")
    ] = None,
) -> None:
    """sessionmem - record coding sessions and recall them as context."""
    configure_logging(log_level)
    state["db_path"] = db


@contextmanager
def open_service() -> Iterator[MemoryService]:
    try:
        store = MemoryStore(state["db_path"]).open()
        client = make_client(load_llm_settings())
    except SessionMemError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)
    try:
        yield MemoryService(store, client)
    finally:
        store.close()


def emit(result: dict) -> dict:
    """Print a service result as JSON, exiting non-zero on an error payload."""
    if "error" in result:
        error = result["error"]
        err_console.print(f"[red]{error['kind']}:[/red] {error['message']}")
        raise typer.Exit(1)
    console.print(json.dumps(result, indent=2), markup=False, highlight=False, soft_wrap=True)
    return result


def parse_json(value: Optional[str], option: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        err_console.print(f"[red]Error:[/red] {option} is not valid JSON: {exc}")
        raise typer.Exit(1)


# ── Session commands ─────────────────────────────────────────────


@app.command("start")
def start(
    project: Annotated[str, typer.Option("--project", "-p", help="Project path")],
    user_prompt: Annotated[
        Optional[str], typer.Option("--user-prompt", "-u", help="Initial user prompt")
    ] = None,
) -> None:
    """Start a new session."""
    with open_service() as service:
        emit(service.start_session(project, user_prompt))


@app.command("record-call")
def record_call(
    session: Annotated[str, typer.Option("--session", "-s", help="Session ID")],
    name: Annotated[str, typer.Option("--name", "-n", help="Function name")],
    args: Annotated[Optional[str], typer.Option("--args", "-a", help="Function args JSON")] = None,
    observation_type: Annotated[
        Optional[str], typer.Option("--type", "-t", help="Observation type tag")
    ] = None,
) -> None:
    """Record a function call as a pending observation."""
    payload = parse_json(args, "--args")
    with open_service() as service:
        emit(service.record_observation_call(session, name, payload, observation_type))


@app.command("record-result")
def record_result(
    observation: Annotated[str, typer.Option("--observation", "-o", help="Observation ID")],
    result: Annotated[str, typer.Option("--result", "-r", help="Result JSON")],
) -> None:
    """Attach a result to a recorded call."""
    payload = parse_json(result, "--result")
    with open_service() as service:
        emit(service.record_observation_result(observation, payload))


@app.command("compress")
def compress(
    observation: Annotated[str, typer.Option("--observation", "-o", help="Observation ID")],
) -> None:
    """Compress one observation now and print the compressed text."""
    with open_service() as service:
        result = asyncio.run(service.compress_now(observation))
        if "error" in result:
            emit(result)
        if not result["compressed"]:
            err_console.print(f"[red]Compression failed for {observation}[/red]")
            raise typer.Exit(1)
        console.print(
            result["observation"]["compressed_data"], markup=False, highlight=False, soft_wrap=True
        )


@app.command("note")
def note(
    session: Annotated[str, typer.Option("--session", "-s", help="Session ID")],
    user_prompt: Annotated[Optional[str], typer.Option("--user-prompt", "-u")] = None,
    ai_response: Annotated[Optional[str], typer.Option("--ai-response", "-r")] = None,
    annotation: Annotated[Optional[str], typer.Option("--annotation", "-a")] = None,
    source: Annotated[
        str, typer.Option("--source", help="manual, clipboard or bridge")
    ] = "manual",
) -> None:
    """Save a prompt/response/annotation note to a session."""
    with open_service() as service:
        emit(service.save_note(session, user_prompt, ai_response, annotation, source))


@app.command("context")
def context(
    project: Annotated[str, typer.Option("--project", "-p", help="Project path")],
    prompt: Annotated[Optional[str], typer.Option("--prompt", "-q", help="Current prompt")] = None,
    recent: Annotated[int, typer.Option("--recent", help="Recent sessions to include")] = 5,
    search: Annotated[int, typer.Option("--search", help="Search matches to include")] = 3,
) -> None:
    """Print the memory context for a project."""
    with open_service() as service:
        result = service.get_context(project, prompt, recent, search)
        if "error" in result:
            emit(result)
        console.print(result["context"], markup=False, highlight=False, soft_wrap=True)


@app.command("summarize")
def summarize(
    session: Annotated[str, typer.Option("--session", "-s", help="Session ID")],
) -> None:
    """Summarize a session and mark it summarized."""
    with open_service() as service:
        result = asyncio.run(service.end_session(session))
        if "error" in result:
            emit(result)
        console.print(result["summary"], markup=False, highlight=False, soft_wrap=True)


@app.command("sessions")
def sessions(
    project: Annotated[str, typer.Option("--project", "-p", help="Project path")],
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum sessions")] = 5,
) -> None:
    """List recent finished sessions for a project."""
    with open_service() as service:
        result = service.list_recent_sessions(project, limit)
        if "error" in result:
            emit(result)

    if not result["sessions"]:
        console.print(f"[dim]No completed sessions found for {project}[/dim]")
        return

    table = Table(title="Recent Sessions")
    table.add_column("Date", style="cyan")
    table.add_column("ID", style="green")
    table.add_column("Status")
    table.add_column("Prompt")
    table.add_column("Observations", justify="right")

    for s in result["sessions"]:
        table.add_row(
            s["created_at"][:10],
            s["id"],
            s["status"],
            s["user_prompt"] or "No prompt",
            str(s["total_observations"]),
        )

    console.print(table)


@app.command("stats")
def stats(
    project: Annotated[
        Optional[str], typer.Option("--project", "-p", help="Restrict to a project")
    ] = None,
) -> None:
    """Show session counts and token savings."""
    with open_service() as service:
        result = service.get_stats(project)
        if "error" in result:
            emit(result)

    snapshot = result["stats"]
    table = Table(title="Memory Stats")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Sessions", str(snapshot["total_sessions"]))
    table.add_row("Observations", str(snapshot["total_observations"]))
    table.add_row("Compressed", str(snapshot["compressed_observations"]))
    table.add_row("Original tokens", str(snapshot["original_tokens"]))
    table.add_row("Tokens saved", str(snapshot["total_tokens_saved"]))
    table.add_row("Compression ratio", f"{snapshot['average_compression_ratio']}%")
    console.print(table)


# ── MCP commands ─────────────────────────────────────────────────


@mcp_app.command("serve")
def mcp_serve() -> None:
    """Start the MCP server (stdio transport)."""
    from sessionmem.mcp import server

    try:
        server.get_service(state["db_path"])
    except SessionMemError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)
    server.mcp.run()
