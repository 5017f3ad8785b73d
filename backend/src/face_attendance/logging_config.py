"""
Logging setup for the face_attendance CLI and services.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    max_log_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """Configure the root logger with a console handler and optional rotating file.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path of a rotating log file (None for console only)
        max_log_size: Maximum size of one log file in bytes
        backup_count: Number of rotated files to keep

    Returns:
        The configured root logger
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Replace handlers from a previous call
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_log_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Keep HTTP client chatter out of INFO logs
    logging.getLogger('httpx').setLevel(max(log_level, logging.WARNING))

    return root_logger


def configure_from_config(config: Dict[str, Dict[str, Any]]) -> logging.Logger:
    """Configure logging from the 'logging' config section."""
    section = config.get('logging', {})
    return configure_logging(
        level=section.get('level', 'INFO'),
        log_file=section.get('file') or None
    )
