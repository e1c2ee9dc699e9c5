"""Configuration and directory management for sessionmem."""

import logging
import os
import sys
from pathlib import Path

from pydantic import BaseModel

SESSIONMEM_DIR = Path(os.environ.get("SESSIONMEM_HOME", Path.home() / ".sessionmem"))
DB_PATH = Path(os.environ.get("SESSIONMEM_DB", SESSIONMEM_DIR / "memory.db"))

DEFAULT_MODEL = "gpt-4o-mini"

# Summarizer and client tuning
RATE_LIMIT_BACKOFF_SECONDS = 60.0
MIN_SUMMARY_LENGTH = 200
MAX_SUMMARY_RETRIES = 2


class LLMSettings(BaseModel):
    """Settings used to build the summarization client."""

    mock: bool = False
    fallback_to_mock: bool = True
    model: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str | None = None
    rate_limit_backoff: float = RATE_LIMIT_BACKOFF_SECONDS


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def load_llm_settings() -> LLMSettings:
    """Read LLM settings from the environment."""
    return LLMSettings(
        mock=_env_flag("SESSIONMEM_MOCK_LLM", False),
        fallback_to_mock=_env_flag("SESSIONMEM_LLM_FALLBACK", True),
        model=os.environ.get("SESSIONMEM_MODEL") or DEFAULT_MODEL,
        api_key=os.environ.get("SESSIONMEM_API_KEY") or os.environ.get("OPENAI_API_KEY"),
        base_url=os.environ.get("SESSIONMEM_BASE_URL") or None,
    )


def ensure_dirs(db_path: Path | None = None) -> None:
    """Ensure the directory holding the database exists."""
    target = db_path or DB_PATH
    target.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str | None = None) -> None:
    """Send log records to stderr so stdout stays clean for stdio transports."""
    name = (level or os.environ.get("SESSIONMEM_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
