"""Shared test fixtures and configuration."""

import base64
import hashlib
import os
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from storefront_payments.config import (
    AmeriabankSettings,
    FastshiftSettings,
    IdramSettings,
    Settings,
    TelcellSettings,
)
from storefront_payments.connectors import build_connectors
from storefront_payments.database import PaymentProvider
from storefront_payments.store import InMemoryOrderStore

APP_URL = "https://shop.test"
IDRAM_REC_ACCOUNT = "110000601"
IDRAM_SECRET = "idram_secret"
TELCELL_SHOP_ID = "telcell_shop"
TELCELL_SHOP_KEY = "telcell_key"
FASTSHIFT_GUID = "3f2b8c1e-9a4d-4e6f-8b2a-1c3d5e7f9a0b"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


class ProviderStub:
    """Fake provider HTTP API behind an ``httpx.MockTransport``.

    Routes are keyed by (method, path); every request is recorded.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Responder] = {}

    def add(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        status_code: int = 200,
        responder: Optional[Responder] = None,
    ) -> None:
        self.routes[(method.upper(), path)] = responder or httpx.Response(status_code, json=json)

    def fail(self, method: str, path: str, exc_type=httpx.ConnectError) -> None:
        self.routes[(method.upper(), path)] = exc_type

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get((request.method, request.url.path))
        if responder is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(responder, type) and issubclass(responder, Exception):
            raise responder("provider unreachable", request=request)
        if isinstance(responder, httpx.Response):
            return responder
        return responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, path: Optional[str] = None) -> List[httpx.Request]:
        if path is None:
            return list(self.requests)
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def settings() -> Settings:
    """Settings with every provider configured and rate limiting off."""
    return Settings(
        app_url=APP_URL,
        rate_limit_enabled=False,
        ameriabank=AmeriabankSettings(
            test_mode=True,
            client_id="ameria_client",
            username="ameria_user",
            password="ameria_pass",
        ),
        fastshift=FastshiftSettings(token="fs_token"),
        idram=IdramSettings(rec_account=IDRAM_REC_ACCOUNT, secret_key=IDRAM_SECRET),
        telcell=TelcellSettings(shop_id=TELCELL_SHOP_ID, shop_key=TELCELL_SHOP_KEY),
    )


@pytest.fixture
def unconfigured_settings() -> Settings:
    return Settings(app_url=APP_URL, rate_limit_enabled=False)


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def connectors(settings, provider_stub):
    return build_connectors(settings, provider_stub.client())


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def idram_order(store):
    """Order #1001, 5000 AMD, with a pending Idram payment."""
    order_id = store.add_order("1001", "5000.00", currency="AMD", customer_email="buyer@example.com")
    payment_id = store.add_payment(order_id, PaymentProvider.IDRAM.value)
    return order_id, payment_id


def idram_confirmation(
    bill_no: str = "1001",
    amount: str = "5000",
    rec_account: str = IDRAM_REC_ACCOUNT,
    secret: str = IDRAM_SECRET,
    payer_account: str = "200000123",
    trans_id: str = "9000001",
    trans_date: str = "19/10/2026 10:15:00",
    checksum: Optional[str] = None,
) -> Dict[str, str]:
    """Idram result-URL confirmation fields, signed unless ``checksum`` is given."""
    if checksum is None:
        payload = ":".join([rec_account, amount, secret, bill_no, payer_account, trans_id, trans_date])
        checksum = hashlib.md5(payload.encode("utf-8")).hexdigest().upper()
    return {
        "EDP_BILL_NO": bill_no,
        "EDP_REC_ACCOUNT": rec_account,
        "EDP_PAYER_ACCOUNT": payer_account,
        "EDP_AMOUNT": amount,
        "EDP_TRANS_ID": trans_id,
        "EDP_TRANS_DATE": trans_date,
        "EDP_CHECKSUM": checksum,
    }


def idram_precheck(
    bill_no: str = "1001",
    amount: str = "5000",
    rec_account: str = IDRAM_REC_ACCOUNT,
) -> Dict[str, str]:
    return {
        "EDP_PRECHECK": "YES",
        "EDP_BILL_NO": bill_no,
        "EDP_REC_ACCOUNT": rec_account,
        "EDP_AMOUNT": amount,
    }


def telcell_result(
    order_id: str,
    status: str = "PAID",
    amount: str = "5000",
    shop_key: str = TELCELL_SHOP_KEY,
    checksum: Optional[str] = None,
) -> Dict[str, str]:
    """Telcell result-URL fields for ``order_id``, signed unless ``checksum`` is given."""
    fields = {
        "invoice": "INV-77",
        "issuer_id": base64.b64encode(order_id.encode("utf-8")).decode("ascii"),
        "payment_id": "TC-5501",
        "currency": "֏",
        "sum": amount,
        "time": "2026-10-19 10:20:00",
        "status": status,
    }
    if checksum is None:
        payload = (
            shop_key + fields["invoice"] + fields["issuer_id"] + fields["payment_id"]
            + fields["currency"] + fields["sum"] + fields["time"] + fields["status"]
        )
        checksum = hashlib.md5(payload.encode("utf-8")).hexdigest()
    fields["checksum"] = checksum
    return fields
