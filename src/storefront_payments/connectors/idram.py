"""
Idram connector.

Idram is a form-POST provider with a two-phase result URL: first a precheck
(``EDP_PRECHECK=YES``) asking whether the bill is still payable, then a
confirmation signed with an MD5 checksum. Every answer on the result URL is
plain text; ``OK`` means accepted.
"""

import hashlib
import hmac
import logging
from typing import Optional, Dict, Any, Mapping

import httpx

from ..config import IdramSettings
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
    format_amount,
    parse_amount,
)

logger = logging.getLogger(__name__)

IDRAM_LANG_MAP = {
    "en": "EN",
    "hy": "AM",
    "am": "AM",
    "ru": "RU",
}

PRECHECK_OK = "OK"


def compute_checksum(
    rec_account: str,
    amount: str,
    secret_key: str,
    bill_no: str,
    payer_account: str,
    trans_id: str,
    trans_date: str,
) -> str:
    """EDP_CHECKSUM: colon-joined fields, MD5, uppercase hex."""
    payload = ":".join([rec_account, amount, secret_key, bill_no, payer_account, trans_id, trans_date])
    return hashlib.md5(payload.encode("utf-8")).hexdigest().upper()


class IdramConnector(ConnectorBase):
    name = PaymentProvider.IDRAM
    resolution_strategies = (ResolutionStrategy.NUMBER, ResolutionStrategy.ID)
    supported_channels = frozenset({
        CallbackChannel.RETURN,
        CallbackChannel.WEBHOOK,
        CallbackChannel.PRECHECK,
    })
    settles_on_return = False
    accepted_currencies = frozenset({"AMD"})
    ack_body = "OK"

    def __init__(
        self,
        settings: IdramSettings,
        app_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        super().__init__(app_url, http_client, timeout)
        self.settings = settings

    def is_configured(self) -> bool:
        return bool(self.settings.rec_account and self.settings.secret_key)

    async def build_initiation(
        self,
        order: OrderRecord,
        payment: PaymentRecord,
        locale: str,
    ) -> InitiationResult:
        # No outbound call: the browser posts this form to Idram itself.
        form_data: Dict[str, str] = {
            "EDP_LANGUAGE": IDRAM_LANG_MAP.get(locale, "EN"),
            "EDP_REC_ACCOUNT": self.settings.rec_account,
            "EDP_DESCRIPTION": f"Order {order.number}",
            "EDP_AMOUNT": format_amount(order.total),
            "EDP_BILL_NO": order.number,
        }
        if order.customer_email:
            form_data["EDP_EMAIL"] = order.customer_email
        # Fields without the EDP_ prefix come back on the success/fail redirect
        form_data["order_number"] = order.number

        return InitiationResult(form_action=self.settings.form_action, form_data=form_data)

    def parse_callback(self, params: Mapping[str, str], channel: CallbackChannel) -> CallbackNotification:
        raw = {k: str(v) for k, v in params.items()}

        if channel is CallbackChannel.RETURN:
            order_ref = first_param(raw, "order_number", "order", "EDP_BILL_NO")
            if not order_ref:
                raise MalformedNotificationError("Idram return without order reference")
            return CallbackNotification(
                provider=self.name.value,
                channel=channel,
                order_ref=order_ref,
                outcome_code=first_param(raw, "result"),
                raw=raw,
            )

        is_precheck = channel is CallbackChannel.PRECHECK or (
            (first_param(raw, "EDP_PRECHECK") or "").upper() == "YES"
        )
        if is_precheck:
            # Missing fields are answered by the precheck itself, not rejected here
            return CallbackNotification(
                provider=self.name.value,
                channel=channel,
                order_ref=first_param(raw, "EDP_BILL_NO"),
                amount=parse_amount(first_param(raw, "EDP_AMOUNT")),
                is_precheck=True,
                proof={
                    "rec_account": first_param(raw, "EDP_REC_ACCOUNT") or "",
                    "amount": first_param(raw, "EDP_AMOUNT") or "",
                },
                raw=raw,
            )

        required = ["EDP_BILL_NO", "EDP_REC_ACCOUNT", "EDP_AMOUNT", "EDP_TRANS_ID", "EDP_TRANS_DATE", "EDP_CHECKSUM"]
        missing = [name for name in required if not first_param(raw, name)]
        if missing:
            raise MalformedNotificationError(f"Idram confirmation missing {', '.join(missing)}")

        return CallbackNotification(
            provider=self.name.value,
            channel=channel,
            order_ref=first_param(raw, "EDP_BILL_NO"),
            provider_transaction_id=first_param(raw, "EDP_TRANS_ID"),
            amount=parse_amount(first_param(raw, "EDP_AMOUNT")),
            proof={
                "rec_account": first_param(raw, "EDP_REC_ACCOUNT") or "",
                "amount": first_param(raw, "EDP_AMOUNT") or "",
                "bill_no": first_param(raw, "EDP_BILL_NO") or "",
                "payer_account": first_param(raw, "EDP_PAYER_ACCOUNT") or "",
                "trans_id": first_param(raw, "EDP_TRANS_ID") or "",
                "trans_date": first_param(raw, "EDP_TRANS_DATE") or "",
                "checksum": first_param(raw, "EDP_CHECKSUM") or "",
            },
            raw=raw,
        )

    def check_precheck(
        self,
        notification: CallbackNotification,
        order: Optional[OrderRecord],
    ) -> Optional[str]:
        if notification.proof.get("rec_account") != self.settings.rec_account:
            return "EDP_REC_ACCOUNT mismatch"
        if not notification.order_ref or not notification.proof.get("amount"):
            return "EDP_BILL_NO or EDP_AMOUNT missing"
        if notification.amount is None or notification.amount <= 0:
            return "EDP_AMOUNT invalid"
        if order is None:
            return "EDP_BILL_NO not found"
        if not order.is_pending:
            return "Order already processed"
        if not amounts_match(order.total, notification.amount):
            return "EDP_AMOUNT mismatch"
        return None

    async def verify_callback(
        self,
        notification: CallbackNotification,
        order: OrderRecord,
    ) -> VerifiedOutcome:
        proof = notification.proof
        if proof.get("rec_account") != self.settings.rec_account:
            raise AuthenticityError("EDP_REC_ACCOUNT mismatch")

        expected = compute_checksum(
            proof["rec_account"],
            proof["amount"],
            self.settings.secret_key,
            proof["bill_no"],
            proof["payer_account"],
            proof["trans_id"],
            proof["trans_date"],
        )
        received = proof.get("checksum", "").upper()
        if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            raise AuthenticityError("EDP_CHECKSUM not correct")

        if not amounts_match(order.total, notification.amount):
            raise AuthenticityError("EDP_AMOUNT mismatch")

        # A signed confirmation is always a successful payment
        return VerifiedOutcome(
            status=PaymentStatus.PAID,
            provider_transaction_id=proof["trans_id"],
            provider_response={
                "EDP_PAYER_ACCOUNT": proof["payer_account"],
                "EDP_TRANS_ID": proof["trans_id"],
                "EDP_TRANS_DATE": proof["trans_date"],
                "EDP_AMOUNT": proof["amount"],
            },
        )

    def return_hint(self, params: Mapping[str, str]) -> Optional[PaymentStatus]:
        result = (first_param(params, "result") or "").lower()
        if result == "fail":
            return PaymentStatus.FAILED
        if result == "success":
            return PaymentStatus.PAID
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"configured": self.is_configured(), "test_mode": self.settings.test_mode}
