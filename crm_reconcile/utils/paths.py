"""
Path utilities for configuration directory resolution.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".crm-reconcile"

CONFIG_DIR_ENV_VAR = "CRM_RECONCILE_CONFIG_DIR"

# PID file of the scheduler daemon, also inside the config directory
DEFAULT_PID_FILENAME = "daemon.pid"

# Local contact store inside the config directory
DEFAULT_DB_FILENAME = "contacts.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter
        2. CRM_RECONCILE_CONFIG_DIR environment variable
        3. Default directory (~/.crm-reconcile)

    Returns:
        Resolved Path (expanduser and resolve applied)
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_data_path(
    configured: Path | str | None, config_dir: Path, default_name: str
) -> Path:
    """
    Location of a file the tool keeps next to its config.

    A path set in config.yaml wins; relative paths are taken relative to
    the config directory rather than the working directory, so cron and
    the daemon find the same store as an interactive shell.
    """
    if not configured:
        return config_dir / default_name
    path = Path(configured).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return path
