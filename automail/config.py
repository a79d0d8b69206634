"""Single source of truth for process configuration.

All modules import from here, never from os.environ directly. Values come
from the environment first, then from a plain .env file at
secrets/internal.env, then from the defaults below. User-editable settings
(folders, schedule, signature, CC) live in the registry file instead.
"""

import os
from pathlib import Path

from dotenv import dotenv_values

PROJECT_ROOT = Path(__file__).resolve().parent.parent

ENV_FILE = Path(os.environ.get("AUTOMAIL_ENV_FILE", PROJECT_ROOT / "secrets" / "internal.env"))


def _load(path: Path) -> dict[str, str | None]:
    """Read a .env file; a missing file means "use defaults"."""
    if not path.exists():
        return {}
    return dict(dotenv_values(path))


_file = _load(ENV_FILE)


def _get(key: str, default: str) -> str:
    return os.environ.get(key) or _file.get(key) or default


REGISTRY_PATH: str = _get("AUTOMAIL_REGISTRY_PATH", str(PROJECT_ROOT / "data" / "registry.json"))
SEND_LOG_PATH: str = _get("AUTOMAIL_SEND_LOG_PATH", str(PROJECT_ROOT / "data" / "send_log.jsonl"))

# --- Scheduler ---
HEARTBEAT_SECONDS: float = float(_get("AUTOMAIL_HEARTBEAT_SECONDS", "10"))

# --- Ollama (optional AI matcher / report classifier) ---
OLLAMA_BASE_URL: str = _get("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL: str = _get("OLLAMA_MODEL", "")
