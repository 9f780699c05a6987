"""Tests for the FastShift connector, against a mocked merchant API."""

import json
from decimal import Decimal
from typing import Optional

import pytest

from storefront_payments.connectors.base import CallbackChannel
from storefront_payments.connectors.fastshift import is_valid_guid, map_status
from storefront_payments.database import PaymentStatus
from storefront_payments.errors import (
    AuthenticityError,
    MalformedNotificationError,
    ProviderError,
    ProviderUnavailableError,
)
from storefront_payments.store import OrderRecord, PaymentRecord

from conftest import FASTSHIFT_GUID

REGISTER_PATH = "/api/en/vpos/order/register"
STATUS_PATH = f"/api/en/vpos/order/status/{FASTSHIFT_GUID}"


def make_order(total="7500.40", transaction_id: Optional[str] = None) -> OrderRecord:
    return OrderRecord(
        id="order-4",
        number="1004",
        total=Decimal(total),
        currency="AMD",
        payment_status=PaymentStatus.PENDING,
        payments=[
            PaymentRecord(
                id="pay-4",
                order_id="order-4",
                provider="fastshift",
                status=PaymentStatus.PENDING,
                provider_transaction_id=transaction_id,
            ),
        ],
    )


@pytest.fixture
def fastshift(connectors):
    return connectors["fastshift"]


class TestStatusMapping:
    """Tests for map_status."""

    @pytest.mark.parametrize(
        "status, expected",
        [
            ("completed", PaymentStatus.PAID),
            ("SUCCESS", PaymentStatus.PAID),
            ("paid", PaymentStatus.PAID),
            ("rejected", PaymentStatus.FAILED),
            ("expired", PaymentStatus.FAILED),
            ("failed", PaymentStatus.FAILED),
            ("cancelled", PaymentStatus.CANCELLED),
            ("canceled", PaymentStatus.CANCELLED),
            ("processing", PaymentStatus.PENDING),
            ("", PaymentStatus.PENDING),
        ],
    )
    def test_map_status(self, status, expected):
        """Test that unknown values stay pending."""
        assert map_status(status) is expected

    def test_guid_validation(self):
        """Test the UUID shape check."""
        assert is_valid_guid(FASTSHIFT_GUID)
        assert not is_valid_guid("not-a-guid")
        assert not is_valid_guid(FASTSHIFT_GUID + "0")


class TestFastshiftRegister:
    """Tests for order registration."""

    async def test_register_request_and_redirect(self, fastshift, provider_stub):
        """Test the register body and the returned redirect."""
        provider_stub.add("POST", REGISTER_PATH, json={
            "data": {
                "redirect_url": "https://pay.fastshift.am/checkout/abc",
                "order": {"order_number": FASTSHIFT_GUID},
            }
        })
        order = make_order()
        result = await fastshift.build_initiation(order, order.payments[0], "en")

        assert result.redirect_url == "https://pay.fastshift.am/checkout/abc"
        assert result.provider_transaction_id == FASTSHIFT_GUID

        request = provider_stub.calls(REGISTER_PATH)[0]
        assert request.headers["Authorization"] == "Bearer fs_token"
        sent = json.loads(request.content)
        assert is_valid_guid(sent["order_number"])
        assert sent["amount"] == 7500
        assert sent["description"] == "Order 1004"
        assert sent["callback_url"] == "https://shop.test/callback/fastshift/return?order=1004"
        assert sent["webhook_url"] == "https://shop.test/callback/fastshift/webhook?order=1004"
        assert sent["external_order_id"] == "order-4"

    async def test_generated_guid_is_kept_when_not_echoed(self, fastshift, provider_stub):
        """Test that our own UUID is stored when the response omits it."""
        provider_stub.add("POST", REGISTER_PATH, json={"redirect_url": "https://pay.fastshift.am/x"})
        order = make_order()
        result = await fastshift.build_initiation(order, order.payments[0], "en")

        sent = json.loads(provider_stub.calls(REGISTER_PATH)[0].content)
        assert result.provider_transaction_id == sent["order_number"]

    async def test_missing_redirect_is_provider_error(self, fastshift, provider_stub):
        """Test that a response without redirect_url fails the init."""
        provider_stub.add("POST", REGISTER_PATH, json={"data": {}})
        order = make_order()
        with pytest.raises(ProviderError):
            await fastshift.build_initiation(order, order.payments[0], "en")

    async def test_http_error_is_provider_error(self, fastshift, provider_stub):
        """Test that an HTTP error status fails the init."""
        provider_stub.add("POST", REGISTER_PATH, json={"message": "Unauthenticated"}, status_code=401)
        order = make_order()
        with pytest.raises(ProviderError):
            await fastshift.build_initiation(order, order.payments[0], "en")


class TestFastshiftCallback:
    """Tests for callback parsing and status lookup."""

    def test_parse_reads_order_and_guid(self, fastshift):
        """Test both identifiers are picked up."""
        notification = fastshift.parse_callback(
            {"order": "1004", "orderNumber": FASTSHIFT_GUID, "status": "completed"},
            CallbackChannel.WEBHOOK,
        )
        assert notification.order_ref == "1004"
        assert notification.provider_transaction_id == FASTSHIFT_GUID
        assert notification.outcome_code == "completed"

    def test_order_reference_is_truncated(self, fastshift):
        """Test that oversized order values are cut to 64 characters."""
        notification = fastshift.parse_callback({"order": "9" * 200}, CallbackChannel.RETURN)
        assert len(notification.order_ref) == 64

    def test_missing_identifiers_are_malformed(self, fastshift):
        """Test a callback with neither identifier."""
        with pytest.raises(MalformedNotificationError):
            fastshift.parse_callback({"status": "completed"}, CallbackChannel.WEBHOOK)

    def test_invalid_guid_is_malformed(self, fastshift):
        """Test that a non-UUID order_number is refused."""
        with pytest.raises(MalformedNotificationError):
            fastshift.parse_callback({"order": "1004", "order_number": "x' OR 1=1"}, CallbackChannel.WEBHOOK)

    async def test_status_comes_from_api(self, fastshift, provider_stub):
        """Test that the callback's own status is ignored."""
        provider_stub.add("GET", STATUS_PATH, json={"data": {"order": {"status": "rejected"}}})
        notification = fastshift.parse_callback(
            {"order": "1004", "order_number": FASTSHIFT_GUID, "status": "completed"},
            CallbackChannel.RETURN,
        )
        outcome = await fastshift.verify_callback(notification, make_order(transaction_id=FASTSHIFT_GUID))

        assert outcome.status is PaymentStatus.FAILED
        assert outcome.provider_response["callbackStatus"] == "completed"
        assert outcome.provider_response["resolvedStatus"] == "rejected"
        assert provider_stub.calls(STATUS_PATH)[0].headers["Authorization"] == "Bearer fs_token"

    async def test_stored_guid_used_when_callback_has_none(self, fastshift, provider_stub):
        """Test status lookup from the stored transaction id."""
        provider_stub.add("GET", STATUS_PATH, json={"status": "completed"})
        notification = fastshift.parse_callback({"order": "1004"}, CallbackChannel.RETURN)
        outcome = await fastshift.verify_callback(notification, make_order(transaction_id=FASTSHIFT_GUID))
        assert outcome.status is PaymentStatus.PAID

    async def test_pending_status(self, fastshift, provider_stub):
        """Test that an in-flight status is reported as pending."""
        provider_stub.add("GET", STATUS_PATH, json={"data": {"status": "processing"}})
        notification = fastshift.parse_callback({"order": "1004"}, CallbackChannel.WEBHOOK)
        outcome = await fastshift.verify_callback(notification, make_order(transaction_id=FASTSHIFT_GUID))
        assert outcome.status is PaymentStatus.PENDING

    async def test_guid_mismatch_is_rejected(self, fastshift, provider_stub):
        """Test that a GUID other than the registered one is rejected."""
        notification = fastshift.parse_callback(
            {"order": "1004", "order_number": "11111111-2222-4333-8444-555555555555"},
            CallbackChannel.WEBHOOK,
        )
        with pytest.raises(AuthenticityError):
            await fastshift.verify_callback(notification, make_order(transaction_id=FASTSHIFT_GUID))
        assert provider_stub.calls() == []

    async def test_unknown_guid_is_rejected(self, fastshift):
        """Test that without any GUID the status cannot be checked."""
        notification = fastshift.parse_callback({"order": "1004"}, CallbackChannel.WEBHOOK)
        with pytest.raises(AuthenticityError):
            await fastshift.verify_callback(notification, make_order())

    async def test_callback_guid_without_registered_guid_is_rejected(self, fastshift, provider_stub):
        """Test that a GUID the order never registered is not looked up."""
        provider_stub.add("GET", STATUS_PATH, json={"status": "completed"})
        notification = fastshift.parse_callback(
            {"order": "1004", "order_number": FASTSHIFT_GUID},
            CallbackChannel.WEBHOOK,
        )
        with pytest.raises(AuthenticityError):
            await fastshift.verify_callback(notification, make_order())
        assert provider_stub.calls() == []

    async def test_status_api_failure_is_unavailable(self, fastshift, provider_stub):
        """Test that a failing status API leaves the outcome undecided."""
        provider_stub.add("GET", STATUS_PATH, json={}, status_code=502)
        notification = fastshift.parse_callback({"order": "1004"}, CallbackChannel.WEBHOOK)
        with pytest.raises(ProviderUnavailableError):
            await fastshift.verify_callback(notification, make_order(transaction_id=FASTSHIFT_GUID))
