"""Tests for API endpoints."""

import pytest
from fastapi.testclient import TestClient

from storefront_payments.api import create_app
from storefront_payments.connectors import build_connectors
from storefront_payments.database import PaymentProvider, PaymentStatus
from storefront_payments.store import InMemoryOrderStore

from conftest import APP_URL, FASTSHIFT_GUID, idram_confirmation, idram_precheck, telcell_result

PROBLEM_MEDIA_TYPE = "application/problem+json"


class BrokenStore(InMemoryOrderStore):
    """Store whose writes fail, as when the database is down."""

    async def settle(self, *args, **kwargs):
        raise RuntimeError("database is locked")


@pytest.fixture
def client(settings, store, connectors):
    """Create test client."""
    with TestClient(create_app(settings, store=store, connectors=connectors)) as test_client:
        yield test_client


@pytest.fixture
def rate_limited_settings(settings):
    return settings.model_copy(update={"rate_limit_enabled": True, "init_rate_limit": "2/minute"})


def assert_problem(response, status, problem_type):
    assert response.status_code == status
    assert response.headers["content-type"].startswith(PROBLEM_MEDIA_TYPE)
    body = response.json()
    assert body["status"] == status
    assert body["type"] == f"https://api.shop.am/problems/{problem_type}"
    assert body["title"]
    assert body["detail"]
    return body


class TestInitEndpoint:
    """Tests for POST /api/v1/payments/{provider}/init."""

    def test_idram_form(self, client, idram_order):
        """Test that Idram answers with a form to post."""
        response = client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001", "lang": "hy"})

        assert response.status_code == 200
        body = response.json()
        assert body["formAction"] == "https://banking.idram.am/Payment/GetPayment"
        assert body["formData"]["EDP_BILL_NO"] == "1001"
        assert body["formData"]["EDP_AMOUNT"] == "5000"
        assert body["formData"]["EDP_LANGUAGE"] == "AM"
        assert "redirectUrl" not in body

    def test_fastshift_redirect(self, client, store, provider_stub):
        """Test that redirect providers answer with a URL."""
        order_id = store.add_order("4001", "3000")
        store.add_payment(order_id, PaymentProvider.FASTSHIFT.value)
        provider_stub.add("POST", "/api/en/vpos/order/register", json={
            "data": {"redirect_url": "https://pay.fastshift.am/c/1", "order": {"order_number": FASTSHIFT_GUID}},
        })

        response = client.post("/api/v1/payments/fastshift/init", json={"orderNumber": "4001"})

        assert response.status_code == 200
        assert response.json() == {"redirectUrl": "https://pay.fastshift.am/c/1"}

    def test_invalid_lang_falls_back_to_english(self, client, idram_order):
        """Test that an unusable language code is replaced."""
        response = client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001", "lang": "english"})
        assert response.json()["formData"]["EDP_LANGUAGE"] == "EN"

    def test_not_configured(self, unconfigured_settings, store, idram_order):
        """Test the problem document for a provider without credentials."""
        app = create_app(
            unconfigured_settings,
            store=store,
            connectors=build_connectors(unconfigured_settings),
        )
        with TestClient(app) as client:
            response = client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001"})

        body = assert_problem(response, 503, "config-error")
        assert body["title"] == "Payment not configured"

    def test_unknown_provider(self, client):
        """Test an unknown provider name."""
        response = client.post("/api/v1/payments/paypal/init", json={"orderNumber": "1001"})
        assert_problem(response, 404, "not-found")

    def test_order_not_found(self, client):
        """Test an unknown order number."""
        response = client.post("/api/v1/payments/idram/init", json={"orderNumber": "9999"})
        body = assert_problem(response, 404, "not-found")
        assert body["title"] == "Order not found"

    def test_missing_order_number(self, client):
        """Test that a body without orderNumber is a validation error."""
        response = client.post("/api/v1/payments/idram/init", json={})
        body = assert_problem(response, 400, "validation-error")
        assert body["detail"] == "orderNumber is required"

    def test_invalid_body(self, client):
        """Test that a malformed body is reported as a validation problem."""
        response = client.post("/api/v1/payments/idram/init", json={"orderNumber": ["1001"]})
        assert_problem(response, 400, "validation-error")

    def test_paid_order(self, client, store, provider_stub):
        """Test that an already paid order is refused without calling the provider."""
        order_id = store.add_order("2001", "12000", payment_status=PaymentStatus.PAID)
        store.add_payment(order_id, PaymentProvider.AMERIABANK.value, status=PaymentStatus.PAID)

        response = client.post("/api/v1/payments/ameriabank/init", json={"orderNumber": "2001"})

        body = assert_problem(response, 400, "validation-error")
        assert body["title"] == "Invalid state"
        assert provider_stub.calls() == []

    def test_provider_refusal(self, client, store, provider_stub):
        """Test that a refused InitPayment becomes a 402 problem."""
        order_id = store.add_order("2002", "12000")
        store.add_payment(order_id, PaymentProvider.AMERIABANK.value)
        provider_stub.add("POST", "/VPOS/api/VPOS/InitPayment", json={"ResponseCode": 0, "ResponseMessage": "Denied"})

        response = client.post("/api/v1/payments/ameriabank/init", json={"orderNumber": "2002"})

        body = assert_problem(response, 402, "payment-error")
        assert body["detail"] == "Denied"

    def test_provider_unreachable(self, client, store, provider_stub):
        """Test that a transport failure becomes a 502 problem."""
        order_id = store.add_order("2003", "12000")
        store.add_payment(order_id, PaymentProvider.AMERIABANK.value)
        provider_stub.fail("POST", "/VPOS/api/VPOS/InitPayment")

        response = client.post("/api/v1/payments/ameriabank/init", json={"orderNumber": "2003"})

        assert_problem(response, 502, "provider-unavailable")


class TestRateLimit:
    """Tests for the init rate limit."""

    def test_init_is_rate_limited(self, rate_limited_settings, store, connectors, idram_order):
        """Test that the third init within a minute is refused."""
        app = create_app(rate_limited_settings, store=store, connectors=connectors)
        with TestClient(app) as client:
            statuses = [
                client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001"}).status_code
                for _ in range(3)
            ]
            response = client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001"})

        assert statuses == [200, 200, 429]
        assert_problem(response, 429, "rate-limited")

    def test_callbacks_are_not_rate_limited(self, rate_limited_settings, store, connectors, idram_order):
        """Test that provider callbacks are never throttled."""
        app = create_app(rate_limited_settings, store=store, connectors=connectors)
        with TestClient(app) as client:
            statuses = [
                client.post("/callback/idram/precheck", data=idram_precheck()).status_code
                for _ in range(5)
            ]
        assert statuses == [200] * 5

    def test_apps_keep_their_own_limits(self, settings, rate_limited_settings, store, connectors, idram_order):
        """Test that building a second app does not change the first app's limit."""
        limited = create_app(rate_limited_settings, store=store, connectors=connectors)
        unlimited = create_app(settings, store=store, connectors=connectors)

        with TestClient(limited) as limited_client, TestClient(unlimited) as unlimited_client:
            limited_statuses = [
                limited_client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001"}).status_code
                for _ in range(3)
            ]
            unlimited_statuses = [
                unlimited_client.post("/api/v1/payments/idram/init", json={"orderNumber": "1001"}).status_code
                for _ in range(3)
            ]

        assert limited_statuses == [200, 200, 429]
        assert unlimited_statuses == [200, 200, 200]
        assert limited.state.limiter is not unlimited.state.limiter


class TestIdramCallbacks:
    """Tests for the Idram result URL over HTTP."""

    def test_confirmation_pays_order(self, client, store, idram_order):
        """Test the plain-text acknowledgement and the stored state."""
        order_id, _ = idram_order

        response = client.post("/callback/idram/webhook", data=idram_confirmation())

        assert response.status_code == 200
        assert response.text == "OK"
        assert response.headers["content-type"].startswith("text/plain")
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.PAID

    def test_wrong_checksum_is_acknowledged_but_ignored(self, client, store, idram_order):
        """Test that a forged confirmation gets OK and changes nothing."""
        order_id, _ = idram_order

        response = client.post("/callback/idram/webhook", data=idram_confirmation(checksum="DEADBEEF"))

        assert response.status_code == 200
        assert response.text == "OK"
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.PENDING
        assert store.write_count == 0

    def test_precheck(self, client, store, idram_order):
        """Test the precheck answers."""
        ok = client.post("/callback/idram/precheck", data=idram_precheck())
        missing = client.post("/callback/idram/webhook", data=idram_precheck(bill_no="4040"))

        assert ok.text == "OK"
        assert missing.status_code == 200
        assert missing.text == "EDP_BILL_NO not found"
        assert store.write_count == 0

    def test_return_redirects(self, client, idram_order):
        """Test that the browser return is a 302 to the checkout page."""
        response = client.get(
            "/callback/idram/return",
            params={"order_number": "1001", "result": "fail"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == f"{APP_URL}/checkout/error?order=1001&reason=declined"

    def test_json_body(self, client, store, idram_order):
        """Test that a JSON-encoded confirmation is accepted too."""
        order_id, _ = idram_order
        response = client.post("/callback/idram/webhook", json=idram_confirmation())
        assert response.text == "OK"
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.PAID


class TestOtherCallbacks:
    """Tests for Telcell, FastShift and unknown callbacks."""

    def test_telcell_result(self, client, store):
        """Test a Telcell result URL notification."""
        order_id = store.add_order("5001", "5000")
        store.add_payment(order_id, PaymentProvider.TELCELL.value)

        response = client.post("/callback/telcell/webhook", data=telcell_result(order_id))

        assert response.status_code == 200
        assert response.text == ""
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.PAID

    def test_fastshift_webhook_unavailable(self, client, store, provider_stub):
        """Test that an unverifiable FastShift webhook is answered with 503."""
        order_id = store.add_order("4001", "3000")
        store.add_payment(order_id, PaymentProvider.FASTSHIFT.value, provider_transaction_id=FASTSHIFT_GUID)
        provider_stub.fail("GET", f"/api/en/vpos/order/status/{FASTSHIFT_GUID}")

        response = client.post("/callback/fastshift/webhook", json={"order": "4001"})

        assert response.status_code == 503
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.PENDING

    def test_fastshift_return(self, client, store, provider_stub):
        """Test a FastShift return that settles the order."""
        order_id = store.add_order("4002", "3000")
        store.add_payment(order_id, PaymentProvider.FASTSHIFT.value, provider_transaction_id=FASTSHIFT_GUID)
        provider_stub.add("GET", f"/api/en/vpos/order/status/{FASTSHIFT_GUID}", json={"status": "completed"})

        response = client.get("/callback/fastshift/return", params={"order": "4002"}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == f"{APP_URL}/checkout/success?order=4002"

    def test_unknown_provider_callback(self, client):
        """Test a callback for a provider we do not have."""
        response = client.get("/callback/paypal/return")
        assert_problem(response, 404, "not-found")

    def test_store_failure_is_a_server_error(self, settings, connectors):
        """Test that a failing write surfaces as 500 so the provider retries."""
        store = BrokenStore()
        order_id = store.add_order("1001", "5000.00")
        store.add_payment(order_id, PaymentProvider.IDRAM.value)

        app = create_app(settings, store=store, connectors=connectors)
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.post("/callback/idram/webhook", data=idram_confirmation())

        assert response.status_code == 500


class TestLegacyRoutes:
    """Tests for the /wc-api aliases."""

    def test_idram_fail_alias(self, client, idram_order):
        """Test that the legacy fail URL carries the fail hint."""
        response = client.get("/wc-api/idram_fail", params={"order_number": "1001"}, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"].endswith("reason=declined")

    def test_idram_complete_alias(self, client, idram_order):
        """Test that the legacy success URL shows the success page while pending."""
        response = client.get("/wc-api/idram_complete", params={"order_number": "1001"}, follow_redirects=False)
        assert response.headers["location"] == f"{APP_URL}/checkout/success?order=1001"

    def test_idram_result_alias(self, client, store, idram_order):
        """Test that the legacy result URL settles the order."""
        order_id, _ = idram_order
        response = client.post("/wc-api/idram_result", data=idram_confirmation())
        assert response.text == "OK"
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.PAID

    def test_telcell_result_alias_get(self, client, store):
        """Test that Telcell's result URL also works with GET."""
        order_id = store.add_order("5002", "5000")
        store.add_payment(order_id, PaymentProvider.TELCELL.value)
        response = client.get("/wc-api/telcell_result", params=telcell_result(order_id, status="REJECTED"))
        assert response.status_code == 200
        assert store.order_row(order_id)["payment_status"] is PaymentStatus.FAILED

    def test_unknown_alias(self, client):
        """Test that unknown aliases are 404 problems."""
        assert_problem(client.get("/wc-api/paypal_ipn"), 404, "not-found")

    def test_wrong_method(self, client):
        """Test that an alias only answers its registered methods."""
        assert_problem(client.get("/wc-api/idram_result"), 404, "not-found")


class TestHealth:
    """Tests for GET /health."""

    def test_health(self, client):
        """Test the provider summary."""
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert set(body["providers"]) == {"ameriabank", "fastshift", "idram", "telcell"}
        assert body["providers"]["idram"]["configured"] is True
        assert body["providers"]["ameriabank"]["test_mode"] is True
