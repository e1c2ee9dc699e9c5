"""Render past sessions into a briefing for the current prompt."""

from sessionmem.context.models import Session
from sessionmem.context.store import MemoryStore

NO_MEMORY_SENTINEL = "No prior memory for this project."

CONTEXT_HEADER = "# Session Memory Context"
CONTEXT_INTRO = "Use these past sessions to ground your response."
CONTEXT_FOOTER = "\n--\nRespond using this context; do not ask the user to restate it."


def deduplicate(sessions: list[Session]) -> list[Session]:
    """Drop repeated session ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for session in sessions:
        if session.id in seen:
            continue
        seen.add(session.id)
        unique.append(session)
    return unique


class ContextBuilder:
    """Combines recent and keyword-relevant sessions into one text block.

    Recent sessions always come first; search hits only add sessions that
    were not already listed. There is no relevance re-ranking across the two.
    """

    def __init__(self, store: MemoryStore):
        self.store = store

    def build_context(
        self,
        project_path: str,
        current_prompt: str | None = None,
        recent_limit: int = 5,
        search_limit: int = 3,
    ) -> str:
        recent = self.store.get_recent_sessions(project_path, recent_limit)
        relevant = (
            self.store.search_sessions(project_path, current_prompt, search_limit)
            if current_prompt
            else []
        )
        return self.format_context(deduplicate(recent + relevant))

    def format_context(self, sessions: list[Session]) -> str:
        if not sessions:
            return NO_MEMORY_SENTINEL

        parts = [CONTEXT_HEADER, CONTEXT_INTRO]
        for session in sessions:
            parts.extend(self._format_session(session))
        parts.append(CONTEXT_FOOTER)
        return "\n".join(parts)

    def _format_session(self, session: Session) -> list[str]:
        lines = [f"\n## Session {session.created_at.date().isoformat()}"]
        if session.user_prompt:
            lines.append(f"Task: {session.user_prompt}")
        if session.summary:
            lines.append(session.summary.strip())

        for note in self.store.get_notes_for_session(session.id):
            if note.ai_response:
                lines.append(f"AI did: {note.ai_response.strip()}")
            if note.annotation:
                lines.append(f"Note: {note.annotation.strip()}")

        if session.total_observations:
            lines.append(f"Changes captured: {session.total_observations}")
        return lines
