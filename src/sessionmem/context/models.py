"""Data models for sessions, observations and notes."""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    SUMMARIZED = "summarized"
    COMPLETED = "completed"


class ObservationStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    COMPRESSED = "compressed"
    FAILED = "failed"


class NoteSource(str, Enum):
    MANUAL = "manual"
    CLIPBOARD = "clipboard"
    BRIDGE = "bridge"


class Session(BaseModel):
    """A task-scoped unit of work on a project."""

    id: str = Field(default_factory=lambda: new_id("sess"))
    project_path: str = Field(description="Absolute path to the project")
    user_prompt: str | None = Field(default=None, description="What the user set out to do")
    summary: str | None = None
    created_at: datetime = Field(default_factory=_now)
    ended_at: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    total_observations: int = 0
    tokens_saved: int = 0


class Observation(BaseModel):
    """One recorded action with its raw payload and optional compressed form."""

    id: str = Field(default_factory=lambda: new_id("obs"))
    session_id: str
    function_name: str
    function_args: str | None = Field(default=None, description="JSON-encoded arguments")
    function_result: str | None = Field(default=None, description="JSON-encoded result")
    compressed_data: str | None = None
    original_tokens: int | None = None
    compressed_tokens: int | None = None
    tokens_saved: int | None = None
    timestamp: datetime = Field(default_factory=_now)
    status: ObservationStatus = ObservationStatus.PENDING
    observation_type: str | None = None


class Note(BaseModel):
    """A prompt/response/annotation capture attached to a session."""

    id: str = Field(default_factory=lambda: new_id("note"))
    session_id: str
    user_prompt: str | None = None
    ai_response: str | None = None
    annotation: str | None = None
    source: NoteSource = NoteSource.MANUAL
    timestamp: datetime = Field(default_factory=_now)

    def has_content(self) -> bool:
        return any((self.user_prompt, self.ai_response, self.annotation))


class StatsSnapshot(BaseModel):
    """Aggregate compression numbers for one project or the whole store."""

    total_sessions: int = 0
    total_observations: int = 0
    compressed_observations: int = 0
    original_tokens: int = 0
    total_tokens_saved: int = 0
    average_compression_ratio: float = 0.0
