"""
crm_reconcile - keep a local contact store in agreement with an external CRM.

Fetches contacts from a cursor-paginated CRM API, normalizes them into a
canonical schema, reconciles the result against the local store, and fans
compliance flags out to downstream marketing lists.
"""

__version__ = "0.3.0"
