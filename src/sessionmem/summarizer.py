"""Turn a session's compressed observations and notes into one narrative."""

from __future__ import annotations

import logging
import re

from sessionmem.config import MAX_SUMMARY_RETRIES, MIN_SUMMARY_LENGTH
from sessionmem.context.models import Note, ObservationStatus, SessionStatus
from sessionmem.context.store import MemoryStore
from sessionmem.errors import ExternalCallError, NotFoundError
from sessionmem.llm.client import SummarizationClient

logger = logging.getLogger(__name__)

FILE_PATTERN = re.compile(r"(?:[\w\-]+/)*[\w\-]+\.\w{1,6}")
MAX_ENRICHED_FILES = 10
DEFAULT_TASK_PROMPT = "Coding session"
RETRY_SUFFIX = (
    " (IMPORTANT: provide a detailed, comprehensive summary - "
    "the previous attempt was too brief)"
)


def note_snippet(note: Note) -> str | None:
    parts = []
    if note.user_prompt:
        parts.append(f"User asked: {note.user_prompt}")
    if note.ai_response:
        parts.append(f"AI did: {note.ai_response}")
    if note.annotation:
        parts.append(f"Note: {note.annotation}")
    return ". ".join(parts) if parts else None


def extract_files(snippets: list[str], limit: int = MAX_ENRICHED_FILES) -> list[str]:
    """Distinct filename-shaped tokens in first-seen order."""
    found: dict[str, None] = {}
    for text in snippets:
        for match in FILE_PATTERN.findall(text):
            found.setdefault(match, None)
    return list(found)[:limit]


def enrich_summary(summary: str, user_prompt: str | None, snippets: list[str]) -> str:
    """Pad a too-short summary with the goal, touched files and action count."""
    parts = [summary] if summary else []
    if user_prompt:
        parts.append(f"Session goal: {user_prompt}.")
    files = extract_files(snippets)
    if files:
        parts.append(f"Key files touched: {', '.join(files)}.")
    parts.append(f"Total actions recorded: {len(snippets)}.")
    return " ".join(parts)


class SessionSummarizer:
    """Summarizes a session and marks it summarized.

    A summary shorter than ``min_length`` is requested again up to
    ``max_retries`` times; if it is still short it is enriched locally instead
    of calling out again.
    """

    def __init__(
        self,
        store: MemoryStore,
        client: SummarizationClient,
        min_length: int = MIN_SUMMARY_LENGTH,
        max_retries: int = MAX_SUMMARY_RETRIES,
    ):
        self.store = store
        self.client = client
        self.min_length = min_length
        self.max_retries = max_retries

    async def summarize(self, session_id: str) -> str:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"session not found: {session_id}")

        compressed = [
            obs
            for obs in self.store.get_observations_for_session(session_id)
            if obs.status is ObservationStatus.COMPRESSED and obs.compressed_data
        ]
        notes = self.store.get_notes_for_session(session_id)
        logger.debug(
            "summarizing %s: %d compressed observations, %d notes",
            session_id,
            len(compressed),
            len(notes),
        )

        if not compressed and not notes:
            logger.warning("no observations or notes for session %s", session_id)
            fallback = (
                f'Session started with intent: "{session.user_prompt or "Unknown"}". '
                "No observations or notes were recorded."
            )
            self.store.end_session(session_id, fallback, SessionStatus.SUMMARIZED)
            return fallback

        snippets = [obs.compressed_data for obs in compressed]
        snippets.extend(s for s in map(note_snippet, notes) if s)

        task_prompt = session.user_prompt or DEFAULT_TASK_PROMPT
        summary = await self._request(task_prompt, snippets)

        retries = 0
        while len(summary) < self.min_length and retries < self.max_retries:
            retries += 1
            logger.warning(
                "summary too short (%d < %d), retry %d",
                len(summary),
                self.min_length,
                retries,
            )
            summary = await self._request(task_prompt + RETRY_SUFFIX, snippets)

        if len(summary) < self.min_length:
            logger.warning("summary still short after %d retries, enriching", retries)
            summary = enrich_summary(summary, session.user_prompt, snippets)

        self.store.end_session(session_id, summary, SessionStatus.SUMMARIZED)
        logger.info("session %s summarized (%d chars, %d retries)", session_id, len(summary), retries)
        return summary

    async def _request(self, task_prompt: str, snippets: list[str]) -> str:
        try:
            return (await self.client.summarize(task_prompt, snippets)) or ""
        except ExternalCallError as exc:
            logger.warning("summarization call failed: %s", exc)
            return ""
