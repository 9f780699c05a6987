"""Callback reconciliation for payment providers.

Turns browser returns, webhooks and prechecks into at most one
``pending -> paid | failed | cancelled`` transition per order.
"""

from .models import ReconciliationResult, RedirectReason, ResultKind
from .redirects import RedirectBuilder
from .resolver import OrderResolver
from .service import PaidHook, ReconciliationService

__all__ = [
    "ReconciliationResult",
    "RedirectReason",
    "ResultKind",
    "RedirectBuilder",
    "OrderResolver",
    "PaidHook",
    "ReconciliationService",
]
