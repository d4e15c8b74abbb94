"""
Configuration file generator for CRM reconciliation.

Provides functionality to generate a default configuration file with
documentation for every available option.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Every option is commented out, so the generated file loads as an empty
    configuration and the built-in defaults apply until edited.

    Returns:
        String containing YAML configuration with comments
    """
    return """# CRM Reconcile Configuration
# ===========================
#
# This file sets default options for crm-reconcile.
# CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.crm-reconcile/config.yaml (or custom location)
#   2. Uncomment and modify options as needed
#   3. Run crm-reconcile commands normally
#
# Channels and run profiles live in sync_config.json next to this file.


# Source CRM API
# --------------

# API root of the CRM of record
# Default: https://api.hubapi.com
# source_api_url: https://api.hubapi.com

# Environment variable holding the bearer token (never put the token here)
# Default: CRM_RECONCILE_SOURCE_TOKEN
# source_token_env: CRM_RECONCILE_SOURCE_TOKEN

# Records per page (1-100)
# Default: 100
# page_size: 100

# Smallest page size tried when a page keeps failing
# Default: 1
# min_page_size: 1

# Re-list a failing page by id and fetch its records one by one
# Default: true
# recover_by_id: true

# Per-call timeout in seconds (a run as a whole has no deadline)
# Default: 30
# api_timeout: 30

# Minimum seconds between calls to the source API
# Default: 0.1
# source_min_interval: 0.1


# Retries
# -------

# Attempts per call before escalating (transient errors only)
# Default: 5
# max_retries: 5

# First retry delay and cap, in seconds (exponential with jitter)
# Default: 1.0 / 60.0
# retry_base_delay: 1.0
# retry_max_delay: 60.0


# Concurrency
# -----------

# Parallel single-record fetches when recovering a page by id
# Default: 4
# page_fetch_concurrency: 4

# Parallel write batches against the local store
# Default: 2
# write_concurrency: 2

# Parallel calls to the downstream list service
# Default: 4
# fanout_concurrency: 4

# Records per write batch (1-1000)
# Default: 200
# write_batch_size: 200


# Reconciliation
# --------------

# Runs of presence history remembered per record
# Default: 10
# quarantine_window: 10

# Extra runs a vanished record is held before it is soft-deleted
# Default: 2
# quarantine_runs: 2

# Allow soft deletes on runs that skipped pages (absences are unreliable)
# Default: false
# soft_delete_on_gapped_runs: false

# Name similarity (0.0 to 1.0) for cross-source identity matches
# Default: 0.85
# name_similarity_threshold: 0.85


# Downstream List Service
# -----------------------

# API root of the list service; fan-out is disabled when unset
# list_api_url: https://control.example.com/rest

# Environment variables holding the api_id / api_key pair
# Default: CRM_RECONCILE_LIST_API_ID / CRM_RECONCILE_LIST_API_KEY
# list_api_id_env: CRM_RECONCILE_LIST_API_ID
# list_api_key_env: CRM_RECONCILE_LIST_API_KEY

# Minimum seconds between calls to the list service
# Default: 0.2
# list_min_interval: 0.2


# Storage and Logging
# -------------------

# Local contact store (SQLite)
# Default: <config dir>/contacts.db (relative paths are taken from there)
# db_path: /var/lib/crm-reconcile/contacts.db

# Directory for daily log files
# Default: <config dir>/logs
# log_dir: /var/log/crm-reconcile

# Log files kept by the retention cleanup
# Default: 10
# log_retention_count: 10


# Daemon
# ------

# Time between scheduled runs (e.g. 30m, 1h, 1d)
# Default: 1h
# daemon_interval: 1h

# PID file of the running daemon
# Default: <config dir>/daemon.pid
# daemon_pid_file: /run/crm-reconcile.pid
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and saves the
    configuration with owner-only permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
