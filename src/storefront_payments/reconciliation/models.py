"""Models for callback reconciliation."""

import enum
from typing import Optional

from pydantic import BaseModel, Field

from ..connectors.base import CallbackChannel
from ..database.models import PaymentStatus


class ResultKind(str, enum.Enum):
    """What handling a notification amounted to."""
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    PENDING = "pending"
    IGNORED = "ignored"
    REJECTED = "rejected"
    PRECHECK_OK = "precheck_ok"
    PRECHECK_REJECTED = "precheck_rejected"
    RETRY = "retry"


class RedirectReason(str, enum.Enum):
    """Reason codes shown on the checkout error page."""
    DECLINED = "declined"
    CANCELLED = "cancelled"
    PENDING = "pending"
    ORDER_NOT_FOUND = "order_not_found"
    MISSING_PARAMS = "missing_params"
    VERIFICATION_FAILED = "verification_failed"
    UNAVAILABLE = "unavailable"


class ReconciliationResult(BaseModel):
    """Outcome of one callback, with both the browser and the provider answer.

    ``redirect_url`` is used for return channels; ``ack_status`` and
    ``ack_body`` for webhooks and prechecks.
    """
    kind: ResultKind
    provider: str
    channel: CallbackChannel
    order_number: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    redirect_url: str
    ack_status: int = Field(default=200)
    ack_body: str = ""
    reason: Optional[str] = None

    @property
    def changed_state(self) -> bool:
        return self.kind is ResultKind.SETTLED
