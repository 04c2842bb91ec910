"""Platform-aware defaults and environment configuration."""

from __future__ import annotations

from pathlib import Path

from platformdirs import user_data_dir

_DB_FILENAME = "promptlib.db"
_APP_NAME = "promptlib"

DEFAULT_LLM_BACKEND = "mock"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.1"
DEFAULT_LLM_TIMEOUT = 60.0

# Environment variables read by the CLI.
ENV_DB = "PROMPTLIB_DB"
ENV_LLM = "PROMPTLIB_LLM"
ENV_OLLAMA_URL = "PROMPTLIB_OLLAMA_URL"
ENV_OLLAMA_MODEL = "PROMPTLIB_OLLAMA_MODEL"


def default_db_path() -> Path:
    """Return the platform-appropriate default database path."""
    data_dir = Path(user_data_dir(_APP_NAME))
    return data_dir / _DB_FILENAME
