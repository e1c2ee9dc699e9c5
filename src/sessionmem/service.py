"""Caller-facing operations shared by the MCP server and the CLI.

Every operation takes plain arguments and returns a plain dict. Failures come
back as ``{"error": {"kind": ..., "message": ...}}`` instead of raising.
"""

from __future__ import annotations

import functools
import inspect
import logging
import sqlite3
from typing import Any

from sessionmem.compression import CompressionQueue
from sessionmem.context.builder import ContextBuilder
from sessionmem.context.models import NoteSource
from sessionmem.context.store import MemoryStore
from sessionmem.errors import (
    NotFoundError,
    SessionMemError,
    StorageUnavailableError,
    ValidationError,
    error_payload,
)
from sessionmem.llm.client import SummarizationClient
from sessionmem.summarizer import SessionSummarizer

logger = logging.getLogger(__name__)


def _to_payload(name: str, exc: Exception) -> dict:
    if isinstance(exc, sqlite3.Error):
        logger.error("%s failed on the database", name, exc_info=exc)
        exc = StorageUnavailableError(f"database error: {exc}")
    return error_payload(exc)


def structured(func):
    """Return an error payload instead of raising known errors."""
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (SessionMemError, sqlite3.Error) as exc:
                return _to_payload(func.__name__, exc)

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (SessionMemError, sqlite3.Error) as exc:
            return _to_payload(func.__name__, exc)

    return wrapper


def _require(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if value is None or value == ""]
    if missing:
        raise ValidationError(f"{' and '.join(missing)} required")


class MemoryService:
    """Wires the store, context builder, compression queue and summarizer together."""

    def __init__(self, store: MemoryStore, client: SummarizationClient):
        self.store = store
        self.client = client
        self.context = ContextBuilder(store)
        self.queue = CompressionQueue(store, client)
        self.summarizer = SessionSummarizer(store, client)

    def _require_session(self, session_id: str) -> None:
        if self.store.get_session(session_id) is None:
            raise NotFoundError(f"session not found: {session_id}")

    @structured
    def start_session(self, project_path: str, user_prompt: str | None = None) -> dict:
        _require(project_path=project_path)
        session = self.store.create_session(project_path, user_prompt or None)
        return {"session_id": session.id, "session": session.model_dump(mode="json")}

    @structured
    def get_session(self, session_id: str) -> dict:
        _require(session_id=session_id)
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"session not found: {session_id}")
        return {"session": session.model_dump(mode="json")}

    @structured
    def record_observation_call(
        self,
        session_id: str,
        function_name: str,
        function_args: Any = None,
        observation_type: str | None = None,
    ) -> dict:
        _require(session_id=session_id, function_name=function_name)
        self._require_session(session_id)
        obs = self.store.save_observation(session_id, function_name, function_args, observation_type)
        return {"observation_id": obs.id, "observation": obs.model_dump(mode="json")}

    @structured
    def record_observation_result(self, observation_id: str, result: Any) -> dict:
        _require(observation_id=observation_id)
        updated = self.store.update_observation_result(observation_id, result)
        if not updated:
            logger.debug("result for unknown observation %s ignored", observation_id)
        return {"ok": True, "updated": updated}

    @structured
    def enqueue_compression(self, observation_id: str) -> dict:
        _require(observation_id=observation_id)
        position = self.queue.enqueue(observation_id)
        return {"queued": True, "position": position}

    @structured
    def save_note(
        self,
        session_id: str,
        user_prompt: str | None = None,
        ai_response: str | None = None,
        annotation: str | None = None,
        source: str = NoteSource.MANUAL.value,
    ) -> dict:
        _require(session_id=session_id)
        if not (user_prompt or ai_response or annotation):
            raise ValidationError("provide at least one of user_prompt, ai_response, or annotation")
        try:
            source = NoteSource(source)
        except ValueError as exc:
            raise ValidationError(f"invalid note source: {source}") from exc
        self._require_session(session_id)
        note = self.store.save_note(
            session_id, user_prompt or None, ai_response or None, annotation or None, source
        )
        return {"note_id": note.id, "note": note.model_dump(mode="json")}

    @structured
    def get_context(
        self,
        project_path: str,
        current_prompt: str | None = None,
        recent_limit: int = 5,
        search_limit: int = 3,
    ) -> dict:
        _require(project_path=project_path)
        text = self.context.build_context(project_path, current_prompt, recent_limit, search_limit)
        return {"context": text}

    @structured
    def list_recent_sessions(self, project_path: str, limit: int = 5) -> dict:
        _require(project_path=project_path)
        sessions = self.store.get_recent_sessions(project_path, limit)
        return {"sessions": [s.model_dump(mode="json") for s in sessions]}

    @structured
    def get_stats(self, project_path: str | None = None) -> dict:
        return {"stats": self.store.get_stats(project_path or None).model_dump()}

    @structured
    async def end_session(self, session_id: str) -> dict:
        _require(session_id=session_id)
        summary = await self.summarizer.summarize(session_id)
        return {"session_id": session_id, "summary": summary}

    @structured
    async def compress_now(self, observation_id: str) -> dict:
        """Compress one observation inline instead of through the queue."""
        _require(observation_id=observation_id)
        if self.store.get_observation(observation_id) is None:
            raise NotFoundError(f"observation not found: {observation_id}")
        compressed = await self.queue.process_one(observation_id)
        obs = self.store.get_observation(observation_id)
        return {"compressed": compressed, "observation": obs.model_dump(mode="json")}

    @structured
    async def observe(
        self, session_id: str, action: str, details: str, compress: bool = True
    ) -> dict:
        """Record an action and its details in one step, optionally compressing inline."""
        _require(session_id=session_id, action=action, details=details)
        self._require_session(session_id)
        obs = self.store.save_observation(session_id, action, {"details": details})
        self.store.update_observation_result(obs.id, details)
        compressed = False
        if compress:
            compressed = await self.queue.process_one(obs.id)
        return {"observation_id": obs.id, "compressed": compressed}
