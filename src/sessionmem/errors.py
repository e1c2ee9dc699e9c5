"""Error taxonomy shared by the store, pipeline and caller-facing operations."""


class SessionMemError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "Error"


class NotFoundError(SessionMemError):
    """A referenced session, observation or note does not exist."""

    kind = "NotFound"


class ValidationError(SessionMemError):
    """A required argument is missing or invalid. Nothing was persisted."""

    kind = "ValidationError"


class ExternalCallError(SessionMemError):
    """The summarization capability failed and no fallback was available."""

    kind = "ExternalCallFailure"


class StorageUnavailableError(SessionMemError):
    """The database cannot be opened or written."""

    kind = "StorageUnavailable"


def error_payload(exc: Exception) -> dict:
    """Build the structured error returned by caller-facing operations."""
    kind = exc.kind if isinstance(exc, SessionMemError) else "InternalError"
    return {"error": {"kind": kind, "message": str(exc)}}
