"""
Configuration loader module for CRM reconciliation.

Reads config.yaml from the config directory. A missing or empty file
means defaults everywhere. Known keys are checked for type and range
before the engine sees them; the API and batch limits live here too.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from crm_reconcile.utils import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Source CRM API
    "source_api_url": str,
    "source_token_env": str,
    "page_size": int,
    "min_page_size": int,
    "recover_by_id": bool,
    "api_timeout": (int, float),
    "source_min_interval": (int, float),
    # Retry options
    "max_retries": int,
    "retry_base_delay": (int, float),
    "retry_max_delay": (int, float),
    # Concurrency caps
    "page_fetch_concurrency": int,
    "write_concurrency": int,
    "fanout_concurrency": int,
    # Writes
    "write_batch_size": int,
    # Reconciliation
    "quarantine_window": int,
    "quarantine_runs": int,
    "soft_delete_on_gapped_runs": bool,
    "name_similarity_threshold": (int, float),
    # Downstream list service
    "list_api_url": str,
    "list_api_id_env": str,
    "list_api_key_env": str,
    "list_min_interval": (int, float),
    # Storage
    "db_path": str,
    # Logging options
    "log_dir": str,
    "log_retention_count": int,
    # Daemon options
    "daemon_interval": str,
    "daemon_pid_file": str,
}

# Values that must be >= 1
POSITIVE_INT_KEYS = [
    "page_size",
    "min_page_size",
    "max_retries",
    "page_fetch_concurrency",
    "write_concurrency",
    "fanout_concurrency",
    "write_batch_size",
    "log_retention_count",
]

# Values that must be > 0
POSITIVE_FLOAT_KEYS = ["api_timeout", "retry_base_delay", "retry_max_delay"]

# Values that must be >= 0
NON_NEGATIVE_KEYS = ["source_min_interval", "list_min_interval", "quarantine_runs"]

# Source API maximum page size
MAX_PAGE_SIZE = 100

# Bulk writer maximum batch size
MAX_WRITE_BATCH_SIZE = 1000


class ConfigLoader:
    """
    Loads the engine settings from config.yaml.

    Attributes:
        config_dir: Resolved config directory
        config_file: File name inside config_dir

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        config = loader.load_and_validate()
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Args:
            config_dir: Defaults to $CRM_RECONCILE_CONFIG_DIR or ~/.crm-reconcile/
            config_file: File name inside config_dir
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """Read config.yaml from the config directory ({} when absent)."""
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Read settings from an explicit path, e.g. one given with --config-file.

        A missing or empty file yields {}.

        Raises:
            ConfigError: If the file is unreadable, not YAML, or not a mapping
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)

            if config is None:
                logger.debug(f"Configuration file is empty: {path}")
                return {}

            if not isinstance(config, dict):
                raise ConfigError(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(config).__name__}"
                )

            logger.debug(f"Loaded configuration from {path}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration types and value ranges.

        Unknown keys are logged and ignored.

        Raises:
            ConfigError: On the first bad key
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue
            expected_type = VALID_KEYS[key]
            # bool is an int subclass; never accept it for numeric settings
            wrong_bool = isinstance(value, bool) and expected_type is not bool
            if wrong_bool or not isinstance(value, expected_type):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        for key in POSITIVE_INT_KEYS:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in POSITIVE_FLOAT_KEYS:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        for key in NON_NEGATIVE_KEYS:
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        if config.get("page_size", 1) > MAX_PAGE_SIZE:
            raise ConfigError(
                f"page_size must be <= {MAX_PAGE_SIZE}, got {config['page_size']}"
            )

        if config.get("min_page_size", 1) > config.get("page_size", MAX_PAGE_SIZE):
            raise ConfigError("min_page_size must not exceed page_size")

        if config.get("write_batch_size", 1) > MAX_WRITE_BATCH_SIZE:
            raise ConfigError(
                f"write_batch_size must be <= {MAX_WRITE_BATCH_SIZE}, "
                f"got {config['write_batch_size']}"
            )

        if "quarantine_window" in config and config["quarantine_window"] < 2:
            raise ConfigError(
                f"quarantine_window must be >= 2, got {config['quarantine_window']}"
            )

        if "name_similarity_threshold" in config:
            threshold = config["name_similarity_threshold"]
            if not (0.0 <= threshold <= 1.0):
                raise ConfigError(
                    f"name_similarity_threshold must be between 0.0 and 1.0, "
                    f"got {threshold}"
                )

    def load_and_validate(self) -> dict[str, Any]:
        """Read config.yaml and reject bad types or out-of-range values."""
        config = self.load()
        if config:
            self.validate(config)
        return config
