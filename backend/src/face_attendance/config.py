"""
Configuration loader for face_attendance.

Loads config.json from the data home (or the repo's config/ dir in dev mode),
fills in defaults per section and applies environment overrides.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .paths import get_config_path, get_data_home, get_database_path, get_locks_dir

logger = logging.getLogger(__name__)


def get_default_config() -> Dict[str, Dict[str, Any]]:
    """
    Return default configuration.
    """
    return {
        "paths": {
            "data_dir": str(get_data_home()),
            "database_path": str(get_database_path()),
            "locks_dir": str(get_locks_dir()),
        },
        "matching": {
            "embedding_dim": 128,
            "accept_threshold": 0.65,
            "list_threshold": 0.60,
            "max_matches": 5,
        },
        "sync": {
            "max_attempts": 5,
            "backoff_strategy": "exponential",
            "backoff_base_seconds": 30,
            "max_backoff_seconds": 3600,
            "delivery_timeout_seconds": 10.0,
        },
        "remote": {
            "base_url": "",
            "api_key": "",
            "timeout_seconds": 10.0,
        },
        "enrollment": {
            "lock_timeout_seconds": 10.0,
        },
        "logging": {
            "level": "INFO",
            "file": "",
        },
    }


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Load configuration from config.json.
    Falls back to defaults if no config file exists.
    """
    path = Path(config_path) if config_path else get_config_path()

    if path.is_file():
        with open(path, 'r') as f:
            config = json.load(f)
        logger.info(f"Loaded config from: {path}")
        return _process_config(config)

    if config_path:
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.debug("No config file found, using defaults")
    return get_default_config()


def _process_config(config: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Process config, expanding paths and applying defaults.
    """
    defaults = get_default_config()

    for section, values in defaults.items():
        if section not in config:
            config[section] = values
        elif isinstance(values, dict):
            for key, default_value in values.items():
                if key not in config[section]:
                    config[section][key] = default_value

    for key, path in config["paths"].items():
        if path and isinstance(path, str):
            config["paths"][key] = os.path.expanduser(os.path.expandvars(path))

    if config["logging"].get("file"):
        config["logging"]["file"] = os.path.expanduser(
            os.path.expandvars(config["logging"]["file"])
        )

    return config


def get_env_overrides() -> Dict[str, Dict[str, Any]]:
    """
    Get configuration overrides from environment variables.
    """
    overrides: Dict[str, Dict[str, Any]] = {}

    env_map = {
        'FACE_ATTENDANCE_DB': ('paths', 'database_path'),
        'FACE_ATTENDANCE_REMOTE_URL': ('remote', 'base_url'),
        'FACE_ATTENDANCE_REMOTE_KEY': ('remote', 'api_key'),
        'MATCH_ACCEPT_THRESHOLD': ('matching', 'accept_threshold'),
        'MATCH_LIST_THRESHOLD': ('matching', 'list_threshold'),
        'SYNC_MAX_ATTEMPTS': ('sync', 'max_attempts'),
        'SYNC_BACKOFF_BASE': ('sync', 'backoff_base_seconds'),
        'LOG_LEVEL': ('logging', 'level'),
    }

    for env_var, (section, key) in env_map.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        if key in ('accept_threshold', 'list_threshold'):
            value = float(value)
        elif key in ('max_attempts', 'backoff_base_seconds'):
            value = int(value)

        overrides.setdefault(section, {})[key] = value
        # Don't echo secrets
        shown = '***' if key == 'api_key' else value
        logger.debug(f"Environment override: {env_var} -> {section}.{key} = {shown}")

    return overrides


def get_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Load config and apply environment overrides.
    """
    config = load_config(config_path)
    overrides = get_env_overrides()

    for section, values in overrides.items():
        if section in config:
            config[section].update(values)
        else:
            config[section] = values

    _validate(config)
    return config


def _validate(config: Dict[str, Dict[str, Any]]) -> None:
    """Reject threshold and retry settings that cannot work."""
    matching = config["matching"]
    for key in ('accept_threshold', 'list_threshold'):
        if not 0.0 <= float(matching[key]) <= 1.0:
            raise ValueError(f"matching.{key} must be in [0, 1], got {matching[key]}")
    if float(matching["accept_threshold"]) < float(matching["list_threshold"]):
        raise ValueError(
            f"matching.accept_threshold ({matching['accept_threshold']}) must not be below "
            f"matching.list_threshold ({matching['list_threshold']})"
        )
    if int(matching["embedding_dim"]) < 1:
        raise ValueError("matching.embedding_dim must be >= 1")
    if int(config["sync"]["max_attempts"]) < 1:
        raise ValueError("sync.max_attempts must be >= 1")
