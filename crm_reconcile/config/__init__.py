"""
crm_reconcile.config - Configuration management module

Contains configuration loading, validation, run profiles and channels.
"""

from crm_reconcile.config.loader import ConfigError, ConfigLoader
from crm_reconcile.config.sync_config import (
    ChannelConfig,
    ProfileConfig,
    SyncConfig,
    SyncConfigError,
    load_config,
)

__all__ = [
    "ChannelConfig",
    "ConfigError",
    "ConfigLoader",
    "ProfileConfig",
    "SyncConfig",
    "SyncConfigError",
    "load_config",
]
