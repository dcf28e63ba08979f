"""Runtime directory layout."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from sqlalchemy.engine import make_url

from tool_warden import constants


def runtime_directories() -> Dict[str, Path]:
    return {
        "home": constants.HOME_DIR,
        "logs": constants.LOG_DIR,
        "db": constants.DB_DIR,
        "audit": constants.AUDIT_DIR,
    }


def ensure_runtime_directories() -> Dict[str, Path]:
    """Create any missing runtime directory and return them by role."""
    directories = runtime_directories()
    for path in directories.values():
        path.mkdir(parents=True, exist_ok=True)
    return directories


def ensure_sqlite_parent(url: str) -> Optional[Path]:
    """Create the directory holding a file-backed SQLite database.

    Returns the database path, or None for other backends and in-memory SQLite.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or parsed.database in (None, "", ":memory:"):
        return None
    path = Path(parsed.database).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
