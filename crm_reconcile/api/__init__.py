"""
crm_reconcile.api - Clients for the source CRM and the downstream list service
"""

from crm_reconcile.api.base import (
    APIError,
    AuthenticationError,
    NotFoundError,
    PermanentAPIError,
    RateLimitError,
    TransientAPIError,
)
from crm_reconcile.api.list_api import ListServiceAPI, UnknownSubscriberError
from crm_reconcile.api.source_api import Page, SourceCRMAPI

__all__ = [
    "APIError",
    "AuthenticationError",
    "ListServiceAPI",
    "NotFoundError",
    "Page",
    "PermanentAPIError",
    "RateLimitError",
    "SourceCRMAPI",
    "TransientAPIError",
    "UnknownSubscriberError",
]
