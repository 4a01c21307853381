"""
Logging system for the mobile gateway.

This module provides a centralized logging configuration that:
- Outputs to both a rotating file and stderr
- Supports different log levels (DEBUG when the gateway runs verbose)
- Formats logs with timestamp, level, module name, and message
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "mobile_gateway"

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _writable_log_dir(candidate: Path) -> bool:
    """Create the directory if needed and verify a file can be written there."""
    try:
        candidate.mkdir(parents=True, exist_ok=True)
        probe = candidate / ".test_write"
        probe.touch()
        probe.unlink()
        return True
    except (OSError, PermissionError):
        return False


def _default_log_file() -> Optional[str]:
    """
    Pick a log file location.

    Tries the project root first, then the user's home directory. Returns
    None when neither is writable (stderr logging only).
    """
    project_root = Path(__file__).parent.parent.absolute()
    for log_dir in (project_root / "logs", Path.home() / ".mobile_gateway" / "logs"):
        if _writable_log_dir(log_dir):
            return str(log_dir / "mobile_gateway.log")
    return None


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    log_file: Optional[str] = None,
    log_level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    force_reconfigure: bool = False,
) -> logging.Logger:
    """
    Setup and configure logger with file and console handlers.

    This function configures a logger that:
    1. Writes to a file with rotation (RotatingFileHandler)
    2. Writes to stderr so supervisors (termux, systemd) capture output
    3. Uses consistent formatting across all handlers

    Args:
        name: Logger name (default: "mobile_gateway")
        log_file: Path to log file (default: "logs/mobile_gateway.log")
        log_level: Logging level (default: INFO)
        max_bytes: Maximum log file size before rotation (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
        force_reconfigure: Replace existing handlers (default: False)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if logger.handlers and not force_reconfigure:
        return logger

    if force_reconfigure:
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    logger.setLevel(log_level)

    if log_file is None:
        log_file = _default_log_file()

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            logger.addHandler(file_handler)
        except (OSError, PermissionError):
            # Can't create file handler, stderr only
            pass

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    logger.propagate = False

    return logger


def set_verbose(verbose: bool, name: str = ROOT_LOGGER_NAME) -> None:
    """Switch the project logger and its handlers between INFO and DEBUG."""
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get or create a logger instance.

    Child loggers (e.g. "mobile_gateway.browser") propagate to the project
    logger, which is configured with defaults on first use.

    Args:
        name: Logger name (default: "mobile_gateway")

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    if "." in name:
        parent_name = name.split(".")[0]
        parent_logger = logging.getLogger(parent_name)
        if not parent_logger.handlers:
            setup_logger(name=parent_name)
        logger.propagate = True
        return logger

    if not logger.handlers:
        setup_logger(name=name)

    return logger
