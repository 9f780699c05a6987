"""
Ameriabank vPOS 3.1 connector.

InitPayment registers the payment and returns a PaymentID; the buyer pays on
the bank's page and is sent back to our BackURL. The BackURL query string is
never trusted: GetPaymentDetails is called server-side and its answer decides
the outcome.
"""

import logging
from typing import Optional, Dict, Any, Mapping
from urllib.parse import urlencode

import httpx

from ..config import AmeriabankSettings
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
    amounts_match,
    first_param,
    parse_amount,
)

logger = logging.getLogger(__name__)

INIT_SUCCESS_RESPONSE_CODE = 1
PAYMENT_SUCCESS_RESPONSE_CODE = "00"
PAYMENT_STATE_SUCCESSFUL = "Successful"
PAYMENT_STATE_CANCELED = "Canceled"
ORDER_STATUS_DEPOSITED = 2
ORDER_STATUS_CANCELED = 3

# ISO 4217 numeric codes accepted by vPOS
CURRENCY_CODES = {
    "AMD": "051",
    "EUR": "978",
    "USD": "840",
    "RUB": "643",
}

AMERIA_LANG_MAP = {
    "en": "en",
    "hy": "am",
    "am": "am",
    "ru": "ru",
}


def to_ameria_order_id(order_id: str) -> int:
    """Derive the bank's numeric OrderID from our order id.

    31-bit rolling string hash reduced below 1e9; zero is mapped to 1.
    """
    value = 0
    for char in order_id:
        value = ((value << 5) - value + ord(char)) & 0x7FFFFFFF
    return value % 1_000_000_000 or 1


class AmeriabankConnector(ConnectorBase):
    name = PaymentProvider.AMERIABANK
    resolution_strategies = (
        ResolutionStrategy.ID,
        ResolutionStrategy.NUMBER,
        ResolutionStrategy.PROVIDER_TRANSACTION_ID,
    )
    supported_channels = frozenset({CallbackChannel.RETURN})
    accepted_currencies = frozenset(CURRENCY_CODES)

    def __init__(
        self,
        settings: AmeriabankSettings,
        app_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        super().__init__(app_url, http_client, timeout)
        self.settings = settings

    def is_configured(self) -> bool:
        return bool(self.settings.client_id and self.settings.username and self.settings.password)

    @property
    def back_url(self) -> str:
        return f"{self.app_url}/callback/{self.name.value}/return"

    def pay_page_url(self, payment_id: str, lang: str) -> str:
        return f"{self.settings.base_url}/Payments/Pay?{urlencode({'id': payment_id, 'lang': lang})}"

    async def build_initiation(
        self,
        order: OrderRecord,
        payment: PaymentRecord,
        locale: str,
    ) -> InitiationResult:
        lang = AMERIA_LANG_MAP.get(locale, "en")
        body = {
            "ClientID": self.settings.client_id,
            "Username": self.settings.username,
            "Password": self.settings.password,
            "OrderID": to_ameria_order_id(order.id),
            "Amount": float(order.total),
            "Currency": CURRENCY_CODES[order.currency],
            "Description": f"Order {order.number}",
            "BackURL": self.back_url,
            "Opaque": order.id,
            "lang": lang,
        }
        response = await self._request(
            "POST",
            f"{self.settings.base_url}/api/VPOS/InitPayment",
            json=body,
        )
        if response.status_code >= 400:
            logger.error(f"Ameriabank InitPayment HTTP {response.status_code} for order {order.number}")
            raise ProviderError(f"Ameriabank InitPayment HTTP {response.status_code}")

        data = self._json(response, "Ameriabank InitPayment")
        payment_id = data.get("PaymentID")
        if data.get("ResponseCode") != INIT_SUCCESS_RESPONSE_CODE or not payment_id:
            logger.warning(
                f"Ameriabank InitPayment refused order {order.number}: "
                f"code={data.get('ResponseCode')} message={data.get('ResponseMessage')}"
            )
            raise ProviderError(data.get("ResponseMessage") or "Ameriabank init failed")

        return InitiationResult(
            redirect_url=self.pay_page_url(str(payment_id), lang),
            provider_transaction_id=str(payment_id),
            raw_provider_response=data,
        )

    def parse_callback(self, params: Mapping[str, str], channel: CallbackChannel) -> CallbackNotification:
        raw = {k: str(v) for k, v in params.items()}
        payment_id = first_param(raw, "paymentID")
        opaque = first_param(raw, "opaque")
        if not payment_id or not opaque:
            raise MalformedNotificationError("Ameriabank callback without paymentID or opaque")

        return CallbackNotification(
            provider=self.name.value,
            channel=channel,
            order_ref=opaque,
            provider_transaction_id=payment_id,
            # "resposneCode" is the bank's spelling
            outcome_code=first_param(raw, "resposneCode", "responseCode"),
            raw=raw,
        )

    async def get_payment_details(self, payment_id: str) -> Dict[str, Any]:
        body = {
            "PaymentID": payment_id,
            "Username": self.settings.username,
            "Password": self.settings.password,
        }
        response = await self._request(
            "POST",
            f"{self.settings.base_url}/api/VPOS/GetPaymentDetails",
            json=body,
        )
        if response.status_code >= 400:
            logger.error(f"Ameriabank GetPaymentDetails HTTP {response.status_code} for {payment_id}")
            raise ProviderUnavailableError(f"Ameriabank GetPaymentDetails HTTP {response.status_code}")
        try:
            return self._json(response, "Ameriabank GetPaymentDetails")
        except ProviderError as e:
            raise ProviderUnavailableError(e.detail) from e

    def _belongs_to(self, details: Dict[str, Any], order: OrderRecord, payment_id: str) -> bool:
        """Check that GetPaymentDetails describes a payment started for ``order``.

        The stored PaymentID from InitPayment binds it directly; otherwise the
        bank must echo the ``Opaque`` or ``OrderID`` we sent at init.
        """
        payment = order.find_payment(self.name.value)
        if payment is not None and payment.provider_transaction_id == payment_id:
            return True
        if str(details.get("Opaque") or "") == order.id:
            return True
        return str(details.get("OrderID") or "") == str(to_ameria_order_id(order.id))

    async def verify_callback(
        self,
        notification: CallbackNotification,
        order: OrderRecord,
    ) -> VerifiedOutcome:
        payment_id = notification.provider_transaction_id or ""
        payment = order.find_payment(self.name.value)
        if payment is not None and payment.provider_transaction_id and payment.provider_transaction_id != payment_id:
            raise AuthenticityError(
                f"paymentID {payment_id} does not belong to order {order.number}"
            )

        details = await self.get_payment_details(payment_id)
        if not self._belongs_to(details, order, payment_id):
            raise AuthenticityError(
                f"paymentID {payment_id} is bound to neither the Opaque nor the OrderID of order {order.number}"
            )

        response_code = str(details.get("ResponseCode", ""))
        state = str(details.get("PaymentState", ""))
        order_status = str(details.get("OrderStatus", ""))

        paid = response_code == PAYMENT_SUCCESS_RESPONSE_CODE and (
            state == PAYMENT_STATE_SUCCESSFUL or order_status == str(ORDER_STATUS_DEPOSITED)
        )
        if paid:
            if not amounts_match(order.total, parse_amount(details.get("Amount"))):
                raise AuthenticityError(
                    f"Ameriabank amount {details.get('Amount')!r} does not match order {order.number}"
                )
            return VerifiedOutcome(
                status=PaymentStatus.PAID,
                outcome_code=response_code,
                provider_transaction_id=payment_id,
                provider_response=details,
            )

        if state == PAYMENT_STATE_CANCELED or order_status == str(ORDER_STATUS_CANCELED):
            status = PaymentStatus.CANCELLED
        else:
            status = PaymentStatus.FAILED

        return VerifiedOutcome(
            status=status,
            outcome_code=notification.outcome_code or response_code or None,
            provider_transaction_id=payment_id,
            provider_response=details,
        )

    def health_check(self) -> Dict[str, Any]:
        return {
            "configured": self.is_configured(),
            "test_mode": self.settings.test_mode,
            "base_url": self.settings.base_url,
        }
