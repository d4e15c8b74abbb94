"""
crm_reconcile.utils - Utility module

Logging configuration, identity normalization, backoff and throttling.
"""

from crm_reconcile.utils.backoff import BackoffPolicy
from crm_reconcile.utils.normalization import (
    normalize_email,
    normalize_phone,
    normalize_string,
)
from crm_reconcile.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir
from crm_reconcile.utils.throttle import Throttle

__all__ = [
    "BackoffPolicy",
    "DEFAULT_CONFIG_DIR",
    "Throttle",
    "normalize_email",
    "normalize_phone",
    "normalize_string",
    "resolve_config_dir",
]
