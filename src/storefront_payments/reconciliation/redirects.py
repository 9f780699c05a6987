"""Checkout page URLs the buyer is sent to after a provider return."""

from typing import Optional
from urllib.parse import urlencode

from ..database.models import PaymentStatus
from .models import RedirectReason


class RedirectBuilder:
    def __init__(self, app_url: str):
        self.app_url = app_url.rstrip("/")

    def success(self, order_number: Optional[str] = None) -> str:
        url = f"{self.app_url}/checkout/success"
        if order_number:
            url += "?" + urlencode({"order": order_number})
        return url

    def error(self, reason: RedirectReason, order_number: Optional[str] = None) -> str:
        params = {}
        if order_number:
            params["order"] = order_number
        params["reason"] = reason.value
        return f"{self.app_url}/checkout/error?{urlencode(params)}"

    def for_status(self, status: PaymentStatus, order_number: Optional[str]) -> str:
        """Page for a stored or verified payment status."""
        if status is PaymentStatus.PAID:
            return self.success(order_number)
        if status is PaymentStatus.PENDING:
            return self.error(RedirectReason.PENDING, order_number)
        if status in (PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
            return self.error(RedirectReason.CANCELLED, order_number)
        return self.error(RedirectReason.DECLINED, order_number)

    def for_hint(self, hint: Optional[PaymentStatus], order_number: Optional[str]) -> str:
        """Page for a pending order whose provider return only suggests an outcome.

        Without a negative hint the buyer sees the success page; the webhook
        settles the order later.
        """
        if hint is PaymentStatus.FAILED:
            return self.error(RedirectReason.DECLINED, order_number)
        if hint is PaymentStatus.CANCELLED:
            return self.error(RedirectReason.CANCELLED, order_number)
        return self.success(order_number)
