"""
Canonical path resolution for face_attendance.

Single source of truth for where the database, lock files and config live.

All user-writable state goes under ~/.face-attendance/ (overridable via
$FACE_ATTENDANCE_DATA_HOME). In dev mode, config falls back to <repo>/config/.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def _is_dev_mode() -> bool:
    """Detect whether we're running from a repo checkout vs pip install.

    In a pip install, face_attendance lives in site-packages and setup.py
    won't sit at the expected repo root.
    """
    # backend/src/face_attendance/paths.py -> backend/src/face_attendance -> backend/src -> backend -> repo root
    repo_root = Path(__file__).resolve().parent.parent.parent.parent
    return (repo_root / "setup.py").is_file() and (repo_root / "backend").is_dir()


def get_repo_root() -> Optional[Path]:
    """Return the repo root path in dev mode, None in installed mode."""
    if not _is_dev_mode():
        return None
    return Path(__file__).resolve().parent.parent.parent.parent


def get_data_home() -> Path:
    """Return the base directory for all face_attendance user data.

    Default: ~/.face-attendance/
    Override: $FACE_ATTENDANCE_DATA_HOME
    """
    env = os.environ.get("FACE_ATTENDANCE_DATA_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".face-attendance"


def get_config_path() -> Path:
    """Return the path to config.json.

    Search order:
    1. $FACE_ATTENDANCE_DATA_HOME/config.json or ~/.face-attendance/config.json (if exists)
    2. <repo>/config/config.json (dev mode, if exists)
    3. Falls back to the data home location (will be created by init)
    """
    data_home_config = get_data_home() / "config.json"
    if data_home_config.is_file():
        return data_home_config

    repo_root = get_repo_root()
    if repo_root is not None:
        repo_config = repo_root / "config" / "config.json"
        if repo_config.is_file():
            return repo_config

    return data_home_config


def get_database_path() -> Path:
    """Return the default path of the local SQLite store."""
    return get_data_home() / "data" / "attendance.db"


def get_locks_dir() -> Path:
    """Return the directory holding per-identity-key enrollment locks."""
    return get_data_home() / "locks"


def get_log_dir() -> Path:
    """Return the directory for rotating log files."""
    return get_data_home() / "logs"


def ensure_data_home() -> Path:
    """Create the data home directory structure if it doesn't exist.

    Returns the data home path.
    """
    data_home = get_data_home()
    data_home.mkdir(parents=True, exist_ok=True)
    (data_home / "data").mkdir(parents=True, exist_ok=True)
    get_locks_dir().mkdir(parents=True, exist_ok=True)
    get_log_dir().mkdir(parents=True, exist_ok=True)
    return data_home
