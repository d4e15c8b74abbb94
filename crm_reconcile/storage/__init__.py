"""
crm_reconcile.storage - Local contact store
"""

from crm_reconcile.storage.db import ContactStore, StoreBusyError, StoreError

__all__ = ["ContactStore", "StoreBusyError", "StoreError"]
