"""
Telcell Money connector.

The buyer is redirected to a signed PostInvoice URL. Telcell reports the
outcome to the result URL with an MD5 checksum; the browser redirect that
follows carries no proof and is only used to choose a page.
"""

import base64
import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Mapping
from urllib.parse import urlencode

import httpx

from ..config import TelcellSettings
from ..database.models import PaymentStatus, PaymentProvider
from ..errors import AuthenticityError, MalformedNotificationError
from ..store import OrderRecord, PaymentRecord
from .base import (
    CallbackChannel,
    CallbackNotification,
    ConnectorBase,
    InitiationResult,
    ResolutionStrategy,
    VerifiedOutcome,
    amounts_match,
    first_param,
    parse_amount,
)

logger = logging.getLogger(__name__)

TELCELL_CURRENCY = "֏"
TELCELL_ACTION_POST_INVOICE = "PostInvoice"
TELCELL_VALID_DAYS = "1"
TELCELL_STATUS_PAID = "PAID"
TELCELL_STATUS_CANCELLED = "CANCELLED"

TELCELL_LANG_MAP = {
    "en": "en",
    "hy": "am",
    "am": "am",
    "ru": "ru",
}


def _md5(payload: str) -> str:
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def compute_security_code(
    shop_key: str,
    issuer: str,
    currency: str,
    price: str,
    product: str,
    issuer_id: str,
    valid_days: str,
) -> str:
    """Signature of the PostInvoice redirect."""
    return _md5(shop_key + issuer + currency + price + product + issuer_id + valid_days)


def compute_result_checksum(
    shop_key: str,
    invoice: str,
    issuer_id: str,
    payment_id: str,
    currency: str,
    amount: str,
    time: str,
    status: str,
) -> str:
    """Signature of the result URL callback."""
    return _md5(shop_key + invoice + issuer_id + payment_id + currency + amount + time + status)


def encode_b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class TelcellConnector(ConnectorBase):
    name = PaymentProvider.TELCELL
    resolution_strategies = (
        ResolutionStrategy.NUMBER,
        ResolutionStrategy.ID,
        ResolutionStrategy.DECODED_ID,
    )
    supported_channels = frozenset({CallbackChannel.RETURN, CallbackChannel.WEBHOOK})
    settles_on_return = False
    accepted_currencies = frozenset({"AMD"})

    def __init__(
        self,
        settings: TelcellSettings,
        app_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        super().__init__(app_url, http_client, timeout)
        self.settings = settings

    def is_configured(self) -> bool:
        return bool(self.settings.shop_id and self.settings.shop_key)

    async def build_initiation(
        self,
        order: OrderRecord,
        payment: PaymentRecord,
        locale: str,
    ) -> InitiationResult:
        price = str(order.total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        product = encode_b64(f"Order {order.number}")
        issuer_id = encode_b64(order.id)

        security_code = compute_security_code(
            self.settings.shop_key,
            self.settings.shop_id,
            TELCELL_CURRENCY,
            price,
            product,
            issuer_id,
            TELCELL_VALID_DAYS,
        )
        query = urlencode({
            "action": TELCELL_ACTION_POST_INVOICE,
            "issuer": self.settings.shop_id,
            "currency": TELCELL_CURRENCY,
            "price": price,
            "product": product,
            "issuer_id": issuer_id,
            "valid_days": TELCELL_VALID_DAYS,
            "lang": TELCELL_LANG_MAP.get(locale, "am"),
            "security_code": security_code,
        })
        # Telcell allocates the invoice id only when the buyer pays
        return InitiationResult(redirect_url=f"{self.settings.api_url}?{query}")

    def parse_callback(self, params: Mapping[str, str], channel: CallbackChannel) -> CallbackNotification:
        raw = {k: str(v) for k, v in params.items()}

        if channel is CallbackChannel.RETURN:
            order_ref = first_param(raw, "order", "issuer_id")
            if not order_ref:
                raise MalformedNotificationError("Telcell return without order or issuer_id")
            return CallbackNotification(
                provider=self.name.value,
                channel=channel,
                order_ref=order_ref,
                raw=raw,
            )

        issuer_id = raw.get("issuer_id", "")
        checksum = raw.get("checksum", "")
        if not issuer_id or not checksum:
            raise MalformedNotificationError("Missing issuer_id or checksum")

        status = raw.get("status", "").strip()
        return CallbackNotification(
            provider=self.name.value,
            channel=channel,
            order_ref=issuer_id,
            provider_transaction_id=raw.get("payment_id") or None,
            outcome_code=status,
            amount=parse_amount(raw.get("sum")),
            currency=raw.get("currency"),
            proof={
                "invoice": raw.get("invoice", ""),
                "issuer_id": issuer_id,
                "payment_id": raw.get("payment_id", ""),
                "currency": raw.get("currency", ""),
                "sum": raw.get("sum", ""),
                "time": raw.get("time", ""),
                "status": status,
                "checksum": checksum,
            },
            raw=raw,
        )

    async def verify_callback(
        self,
        notification: CallbackNotification,
        order: OrderRecord,
    ) -> VerifiedOutcome:
        proof = notification.proof
        expected = compute_result_checksum(
            self.settings.shop_key,
            proof["invoice"],
            proof["issuer_id"],
            proof["payment_id"],
            proof["currency"],
            proof["sum"],
            proof["time"],
            proof["status"],
        )
        received = proof["checksum"].lower()
        if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            raise AuthenticityError("Telcell checksum invalid")

        if not amounts_match(order.total, notification.amount):
            raise AuthenticityError(f"Telcell sum {proof['sum']!r} does not match order total")

        status = notification.outcome_code or ""
        if status == TELCELL_STATUS_PAID:
            outcome = PaymentStatus.PAID
        elif status == TELCELL_STATUS_CANCELLED:
            outcome = PaymentStatus.CANCELLED
        else:
            outcome = PaymentStatus.FAILED

        return VerifiedOutcome(
            status=outcome,
            outcome_code=status,
            provider_transaction_id=notification.provider_transaction_id,
            provider_response=dict(notification.raw),
        )

    def health_check(self) -> Dict[str, Any]:
        return {"configured": self.is_configured(), "test_mode": self.settings.test_mode}
