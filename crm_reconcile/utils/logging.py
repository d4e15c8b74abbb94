"""
Logging configuration module for crm_reconcile.

Provides centralized logging configuration with support for:
- Console and daily file logging
- Configurable log levels via environment variables
- A dedicated investigation log for cross-source identity matches
- Colored console output (when supported)
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from crm_reconcile.utils.paths import DEFAULT_CONFIG_DIR

# Root logger name for the package hierarchy
ROOT_LOGGER_NAME = "crm_reconcile"

# Logger that records every identity-match decision
INVESTIGATION_LOGGER_NAME = "crm_reconcile.investigation"

# Console format (short)
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format, also used for log files
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

INVESTIGATION_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"

# Environment variable names
ENV_LOG_LEVEL = "CRM_RECONCILE_LOG_LEVEL"
ENV_DEBUG = "CRM_RECONCILE_DEBUG"
ENV_LOG_FILE = "CRM_RECONCILE_LOG_FILE"

# Default log directory, next to the config files
DEFAULT_LOG_DIR = DEFAULT_CONFIG_DIR / "logs"

LOG_FILE_PREFIX = "crm_reconcile_"
INVESTIGATION_FILE_PREFIX = "investigations_"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Log directory chosen by the last setup_logging() call
_configured_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when stderr is a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    CRM_RECONCILE_DEBUG wins over CRM_RECONCILE_LOG_LEVEL. Unknown level
    names fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return _LEVELS.get(level_str, logging.INFO)


def _daily_log_name(prefix: str = LOG_FILE_PREFIX) -> str:
    return f"{prefix}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from the environment or the log directory.

    Args:
        log_dir: Directory for the daily log file (defaults to DEFAULT_LOG_DIR)

    Returns:
        Path to the log file, or None if file logging is disabled via
        CRM_RECONCILE_LOG_FILE=none
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return (log_dir or DEFAULT_LOG_DIR) / _daily_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the crm_reconcile application.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, force DEBUG and use the verbose console format.
        log_dir: Directory for daily log files.
        log_file: Explicit log file path (overrides log_dir).
        enable_file_logging: If False, only log to the console.
        use_colors: If True, color console output when supported.

    Returns:
        The crm_reconcile package logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path('/var/log/crm-reconcile'))
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file if log_file else get_log_file_path(log_dir)

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                # File always captures DEBUG
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    if log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = log_dir

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Remove old log files, keeping the most recent ones of each kind.

    Args:
        log_dir: Directory containing log files. Defaults to the directory
                 configured by setup_logging(), then DEFAULT_LOG_DIR.
        keep_count: Number of files to keep per kind. 0 disables cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or DEFAULT_LOG_DIR
    if not logs_dir.exists():
        return 0

    deleted_count = 0
    for prefix in (LOG_FILE_PREFIX, INVESTIGATION_FILE_PREFIX):
        logs = sorted(
            logs_dir.glob(f"{prefix}*.log"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old_log in logs[keep_count:]:
            try:
                old_log.unlink()
                deleted_count += 1
            except OSError as e:
                logging.getLogger(ROOT_LOGGER_NAME).debug(
                    f"Could not delete old log {old_log}: {e}"
                )

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger of the crm_reconcile hierarchy.

    Args:
        name: Name of the module (typically __name__)
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the console logging level at runtime."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    for handler in logger.handlers:
        # File handlers stay at DEBUG
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


def setup_investigation_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Set up the dedicated logger for cross-source identity matches.

    Every candidate pair surfaced for human review is written here with
    the rule that matched and its score. Falls back to stderr when the log
    file cannot be created.

    Args:
        log_file: Custom log file path. Defaults to a timestamped file in
                  the configured log directory.
        level: Logging level (default DEBUG)

    Returns:
        The investigation logger
    """
    logger = logging.getLogger(INVESTIGATION_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    if log_file is None:
        logs_dir = _configured_log_dir or DEFAULT_LOG_DIR
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = logs_dir / f"{INVESTIGATION_FILE_PREFIX}{timestamp}.log"

    formatter = logging.Formatter(INVESTIGATION_LOG_FORMAT, DATE_FORMAT)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.info(f"Investigation log session started: {log_file}")
    except OSError as e:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.warning(f"Could not create investigation log {log_file}: {e}")

    return logger


def get_investigation_logger() -> logging.Logger:
    """Get the investigation logger (unconfigured until set up)."""
    return logging.getLogger(INVESTIGATION_LOGGER_NAME)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "setup_investigation_logger",
    "get_investigation_logger",
    "DEFAULT_LOG_DIR",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
