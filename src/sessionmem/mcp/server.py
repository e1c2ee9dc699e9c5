"""MCP server exposing session memory tools."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from sessionmem.config import load_llm_settings
from sessionmem.context.store import MemoryStore
from sessionmem.llm.client import make_client
from sessionmem.service import MemoryService

logger = logging.getLogger(__name__)

service: MemoryService | None = None


def get_service(db_path: Path | None = None) -> MemoryService:
    """Build the process-wide service on first use."""
    global service
    if service is None:
        store = MemoryStore(db_path).open()
        service = MemoryService(store, make_client(load_llm_settings()))
    return service


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    svc = get_service()
    svc.queue.start()
    try:
        yield
    finally:
        await svc.queue.stop()
        dropped = svc.queue.discard()
        if dropped:
            logger.warning("shutting down with %d compression jobs still queued; dropped", dropped)
        svc.store.close()


mcp = FastMCP("sessionmem", lifespan=lifespan)


@mcp.tool()
def memory_start_session(project_path: str, user_prompt: str | None = None) -> dict:
    """Create a new memory session to track coding work for a project.

    Call this at the START of a task. After making changes, use memory_save_note
    to record what you did; when done, call memory_end_session.

    Args:
        project_path: Absolute path to the project directory
        user_prompt: What the user wants to accomplish in this session
    """
    return get_service().start_session(project_path, user_prompt)


@mcp.tool()
def memory_save_note(
    session_id: str,
    user_prompt: str | None = None,
    ai_response: str | None = None,
    annotation: str | None = None,
    source: str = "manual",
) -> dict:
    """Save a note to the active session.

    Call this after every significant action. Notes are the main input for the
    end-of-session summary, so include file names, what changed, and why.

    Args:
        session_id: The active session ID
        user_prompt: What the user asked or requested
        ai_response: What you did: files created or modified, logic changes
        annotation: Key decisions, trade-offs, gotchas, or follow-ups
        source: Where the note came from: manual, clipboard or bridge
    """
    return get_service().save_note(session_id, user_prompt, ai_response, annotation, source)


@mcp.tool()
def memory_get_context(project_path: str, current_prompt: str | None = None) -> dict | str:
    """Retrieve past session context for a project.

    Use this at the START of a conversation to load what was done before.

    Args:
        project_path: Absolute path to the project directory
        current_prompt: The current user prompt, used to find relevant past sessions
    """
    result = get_service().get_context(project_path, current_prompt)
    return result.get("context", result)


@mcp.tool()
async def memory_end_session(session_id: str) -> dict:
    """End and summarize a coding session from its notes and observations.

    Call memory_save_note at least once before this, otherwise the summary
    only records the original intent.

    Args:
        session_id: The session ID to finalize
    """
    return await get_service().end_session(session_id)


@mcp.tool()
async def memory_observe(session_id: str, action: str, details: str, compress: bool = True) -> dict:
    """Record a coding action in the current session.

    Args:
        session_id: The active session ID
        action: What was done (e.g. "created file", "fixed bug")
        details: Files affected, what changed, why
        compress: Whether to compress the details right away
    """
    return await get_service().observe(session_id, action, details, compress)


@mcp.tool()
def memory_record_call(
    session_id: str,
    function_name: str,
    function_args: dict | None = None,
    observation_type: str | None = None,
) -> dict:
    """Record a tool call as a pending observation.

    Args:
        session_id: The active session ID
        function_name: Name of the tool or function that was called
        function_args: Arguments it was called with
        observation_type: Optional tag such as "file_write"
    """
    return get_service().record_observation_call(
        session_id, function_name, function_args, observation_type
    )


@mcp.tool()
def memory_record_result(observation_id: str, result: dict | str | None = None) -> dict:
    """Attach the result of a recorded call.

    Args:
        observation_id: ID returned by memory_record_call
        result: The call's result
    """
    return get_service().record_observation_result(observation_id, result)


@mcp.tool()
def memory_compress(observation_id: str) -> dict:
    """Queue an observation for background compression.

    Args:
        observation_id: The observation to compress
    """
    return get_service().enqueue_compression(observation_id)


@mcp.tool()
def memory_list_sessions(project_path: str, limit: int = 5) -> dict:
    """List recent finished sessions for a project, newest first.

    Args:
        project_path: Absolute path to the project directory
        limit: Maximum sessions to return (default 5)
    """
    return get_service().list_recent_sessions(project_path, limit)


@mcp.tool()
def memory_stats(project_path: str | None = None) -> dict:
    """Session counts and token savings, optionally for one project.

    Args:
        project_path: Optional - restrict to a specific project
    """
    return get_service().get_stats(project_path)
