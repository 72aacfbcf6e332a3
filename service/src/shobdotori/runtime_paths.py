from __future__ import annotations

import os
from pathlib import Path


def resolve_runtime_dir() -> Path:
    env_runtime_dir = os.getenv("SHOBDOTORI_RUNTIME_DIR")
    if env_runtime_dir:
        return Path(env_runtime_dir).expanduser().resolve()

    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return Path(xdg_data_home) / "shobdotori"

    return Path.home() / ".local" / "share" / "shobdotori"


RUNTIME_DIR = resolve_runtime_dir()
RUNTIME_DB_PATH = RUNTIME_DIR / "shobdotori.db"
RUNTIME_RECORDINGS_DIR = RUNTIME_DIR / "recordings"
RUNTIME_BACKEND_LOG_PATH = RUNTIME_DIR / "backend.log"
