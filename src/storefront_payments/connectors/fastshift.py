"""
FastShift connector.

Orders are registered with a fresh UUID4 ``order_number``; the buyer pays on
FastShift and comes back through the callback URL, while the same URL
receives a server-side webhook. Either way the status API is asked for the
order status; the callback's own ``status`` field is ignored.
"""

import logging
import re
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Mapping
from urllib.parse import quote, urlencode

import httpx

from ..config import FastshiftSettings
from ..database.models import PaymentStatus, PaymentProvider
from ..errors import (
    AuthenticityError,
    MalformedNotificationError,
    ProviderError,
    ProviderUnavailableError,
)
from ..store import OrderRecord, PaymentRecord
from .base import (
    CallbackChannel,
    CallbackNotification,
    ConnectorBase,
    InitiationResult,
    ResolutionStrategy,
    VerifiedOutcome,
    first_param,
)

logger = logging.getLogger(__name__)

REGISTER_PATH = "/vpos/order/register"
STATUS_PATH = "/vpos/order/status"

GUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

STATUS_PAID = frozenset({"completed", "success", "paid"})
STATUS_FAILED = frozenset({"rejected", "expired", "failed"})
STATUS_CANCELLED = frozenset({"cancelled", "canceled"})

MAX_ORDER_REF_LENGTH = 64


def is_valid_guid(value: str) -> bool:
    return len(value) <= 36 and bool(GUID_RE.match(value))


def map_status(status: str) -> PaymentStatus:
    """Map a FastShift order status onto ours; unknown values stay pending."""
    normalized = (status or "").strip().lower()
    if normalized in STATUS_PAID:
        return PaymentStatus.PAID
    if normalized in STATUS_FAILED:
        return PaymentStatus.FAILED
    if normalized in STATUS_CANCELLED:
        return PaymentStatus.CANCELLED
    return PaymentStatus.PENDING


class FastshiftConnector(ConnectorBase):
    name = PaymentProvider.FASTSHIFT
    resolution_strategies = (
        ResolutionStrategy.NUMBER,
        ResolutionStrategy.PROVIDER_TRANSACTION_ID,
    )
    supported_channels = frozenset({CallbackChannel.RETURN, CallbackChannel.WEBHOOK})

    def __init__(
        self,
        settings: FastshiftSettings,
        app_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        super().__init__(app_url, http_client, timeout)
        self.settings = settings

    def is_configured(self) -> bool:
        return bool(self.settings.token)

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.token}",
            "Accept": "application/json",
        }

    def callback_url(self, order_number: str) -> str:
        return f"{self.app_url}/callback/{self.name.value}/return?{urlencode({'order': order_number})}"

    def webhook_url(self, order_number: str) -> str:
        return f"{self.app_url}/callback/{self.name.value}/webhook?{urlencode({'order': order_number})}"

    async def build_initiation(
        self,
        order: OrderRecord,
        payment: PaymentRecord,
        locale: str,
    ) -> InitiationResult:
        order_guid = str(uuid.uuid4())
        body = {
            "order_number": order_guid,
            "amount": int(order.total.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
            "description": f"Order {order.number}",
            "callback_url": self.callback_url(order.number),
            "webhook_url": self.webhook_url(order.number),
            "external_order_id": order.id,
        }
        response = await self._request(
            "POST",
            f"{self.settings.api_base}{REGISTER_PATH}",
            json=body,
            headers=self._headers,
        )
        if response.status_code >= 400:
            logger.error(f"FastShift register HTTP {response.status_code} for order {order.number}")
            raise ProviderError(f"FastShift register HTTP {response.status_code}")

        data = self._json(response, "FastShift register")
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        redirect_url = inner.get("redirect_url") or data.get("redirect_url")
        if not redirect_url or not isinstance(redirect_url, str):
            raise ProviderError("FastShift register: missing redirect_url in response")

        order_block = inner.get("order") if isinstance(inner.get("order"), dict) else {}
        registered = order_block.get("order_number")
        transaction_id = registered if isinstance(registered, str) and registered else order_guid

        return InitiationResult(
            redirect_url=redirect_url,
            provider_transaction_id=transaction_id,
            raw_provider_response=data,
        )

    def parse_callback(self, params: Mapping[str, str], channel: CallbackChannel) -> CallbackNotification:
        raw = {k: str(v) for k, v in params.items() if v is not None}
        our_number = (first_param(raw, "order") or "")[:MAX_ORDER_REF_LENGTH] or None
        guid = first_param(raw, "order_number", "orderNumber")

        if not our_number and not guid:
            raise MalformedNotificationError("Missing order identifier")
        if guid and not is_valid_guid(guid):
            raise MalformedNotificationError("Invalid order_number format")

        return CallbackNotification(
            provider=self.name.value,
            channel=channel,
            order_ref=our_number,
            provider_transaction_id=guid,
            outcome_code=first_param(raw, "status"),
            raw=raw,
        )

    async def get_order_status(self, order_guid: str) -> str:
        response = await self._request(
            "GET",
            f"{self.settings.api_base}{STATUS_PATH}/{quote(order_guid, safe='')}",
            headers=self._headers,
        )
        if response.status_code >= 400:
            logger.error(f"FastShift status HTTP {response.status_code} for {order_guid}")
            raise ProviderUnavailableError(f"FastShift status HTTP {response.status_code}")
        try:
            data = self._json(response, "FastShift status")
        except ProviderError as e:
            raise ProviderUnavailableError(e.detail) from e

        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        order_block = inner.get("order") if isinstance(inner.get("order"), dict) else {}
        status = order_block.get("status") or inner.get("status") or data.get("status")
        if not status:
            raise ProviderUnavailableError("FastShift status response carries no status")
        return str(status)

    async def verify_callback(
        self,
        notification: CallbackNotification,
        order: OrderRecord,
    ) -> VerifiedOutcome:
        # Only the GUID registered for this order is looked up
        payment = order.find_payment(self.name.value)
        order_guid = payment.provider_transaction_id if payment else None
        received_guid = notification.provider_transaction_id

        if not order_guid:
            raise AuthenticityError(f"No FastShift order_number registered for order {order.number}")
        if received_guid and received_guid != order_guid:
            raise AuthenticityError(
                f"order_number {received_guid} does not belong to order {order.number}"
            )

        resolved = await self.get_order_status(order_guid)
        status = map_status(resolved)
        logger.info(
            f"FastShift status for order {order.number}: {resolved} "
            f"(callback said {notification.outcome_code or '-'})"
        )

        return VerifiedOutcome(
            status=status,
            outcome_code=resolved,
            provider_transaction_id=order_guid,
            provider_response={
                "callbackStatus": notification.outcome_code or "",
                "resolvedStatus": resolved,
                "fromApi": True,
            },
        )
