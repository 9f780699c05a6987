import base64
import binascii
import enum
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Tuple, FrozenSet, Mapping

import httpx
from pydantic import BaseModel, Field

from ..database.models import PaymentStatus, PaymentProvider
from ..errors import (
    InvalidAmountError,
    InvalidCurrencyError,
    ProviderError,
    ProviderUnavailableError,
)
from ..store import OrderRecord, PaymentRecord

logger = logging.getLogger(__name__)


class CallbackChannel(str, enum.Enum):
    """How a provider notification reached us."""
    RETURN = "return"  # browser redirect
    WEBHOOK = "webhook"  # server-to-server
    PRECHECK = "precheck"  # preliminary validation request


class ResolutionStrategy(str, enum.Enum):
    """Ways of mapping a notification back to an order, tried in the order declared."""
    NUMBER = "number"
    ID = "id"
    DECODED_ID = "decoded_id"
    PROVIDER_TRANSACTION_ID = "provider_transaction_id"


# Canonical models
class InitiationResult(BaseModel):
    """What the browser needs to continue to the provider."""
    redirect_url: Optional[str] = None
    form_action: Optional[str] = None
    form_data: Optional[Dict[str, str]] = None
    provider_transaction_id: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None

    def to_response(self) -> Dict[str, Any]:
        if self.redirect_url:
            return {"redirectUrl": self.redirect_url}
        return {"formAction": self.form_action, "formData": self.form_data}


class CallbackNotification(BaseModel):
    """Provider payload normalized to one shape."""
    provider: str
    channel: CallbackChannel
    order_ref: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    outcome_code: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    is_precheck: bool = False
    proof: Dict[str, str] = Field(default_factory=dict)
    raw: Dict[str, str] = Field(default_factory=dict)


class VerifiedOutcome(BaseModel):
    """Result of authenticating a notification. ``status`` pending means no decision yet."""
    status: PaymentStatus
    outcome_code: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """Parse a provider amount string; None when absent or not a number."""
    if value is None or str(value).strip() == "":
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def amounts_match(expected: Decimal, received: Optional[Decimal]) -> bool:
    if received is None:
        return False
    return abs(expected - received) <= Decimal("0.01")


def format_amount(amount: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros: 5000.00 -> '5000'."""
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def decode_opaque_id(value: str) -> Optional[str]:
    """Decode a base64 encoded identifier; None if it is not valid base64 text."""
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return decoded or None


def first_param(params: Mapping[str, Any], *names: str) -> Optional[str]:
    """First non-blank value among ``names``, stripped."""
    for name in names:
        value = params.get(name)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


class ConnectorBase(ABC):
    """
    Adapter between our orders and one provider's protocol.

    Connectors do not touch the order store. Outbound calls go through the
    injected ``httpx.AsyncClient``; transport failures are translated into
    ``ProviderUnavailableError`` so callers never see raw httpx exceptions.
    """

    name: PaymentProvider
    resolution_strategies: Tuple[ResolutionStrategy, ...] = (
        ResolutionStrategy.NUMBER,
        ResolutionStrategy.ID,
    )
    supported_channels: FrozenSet[CallbackChannel] = frozenset({CallbackChannel.RETURN})
    # False when the browser return is only a hint and a webhook carries the outcome
    settles_on_return: bool = True
    accepted_currencies: Optional[FrozenSet[str]] = None
    ack_body: str = ""
    ack_media_type: str = "text/plain; charset=utf-8"

    def __init__(
        self,
        app_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.app_url = app_url.rstrip("/")
        self._http = http_client
        self.timeout = timeout

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError(f"{self.name.value} connector has no HTTP client")
        return self._http

    @abstractmethod
    def is_configured(self) -> bool:
        raise NotImplementedError

    def validate_order(self, order: OrderRecord) -> None:
        """Reject orders the provider cannot take, before any outbound call."""
        if order.total <= 0:
            raise InvalidAmountError("Order total is invalid")
        if self.accepted_currencies is not None and order.currency not in self.accepted_currencies:
            accepted = ", ".join(sorted(self.accepted_currencies))
            raise InvalidCurrencyError(f"{self.display_name} accepts only {accepted}")

    @property
    def display_name(self) -> str:
        return self.name.value.capitalize()

    @abstractmethod
    async def build_initiation(
        self,
        order: OrderRecord,
        payment: PaymentRecord,
        locale: str,
    ) -> InitiationResult:
        raise NotImplementedError

    @abstractmethod
    def parse_callback(self, params: Mapping[str, str], channel: CallbackChannel) -> CallbackNotification:
        """Normalize the raw parameters; raise MalformedNotificationError if unusable."""
        raise NotImplementedError

    @abstractmethod
    async def verify_callback(
        self,
        notification: CallbackNotification,
        order: OrderRecord,
    ) -> VerifiedOutcome:
        """Authenticate a notification and decide its outcome.

        Raises AuthenticityError when the notification must not move state.
        """
        raise NotImplementedError

    def check_precheck(
        self,
        notification: CallbackNotification,
        order: Optional[OrderRecord],
    ) -> Optional[str]:
        """Validate a precheck request; return a rejection reason or None.

        ``order`` is None when the reference did not resolve.
        """
        raise NotImplementedError(f"{self.name.value} has no precheck phase")

    def return_hint(self, params: Mapping[str, str]) -> Optional[PaymentStatus]:
        """Outcome suggested by a browser return, for display only."""
        return None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"{self.name.value} request to {url} timed out")
            raise ProviderUnavailableError(f"{self.display_name} did not respond in time") from e
        except httpx.HTTPError as e:
            logger.error(f"{self.name.value} request to {url} failed: {type(e).__name__}")
            raise ProviderUnavailableError(f"{self.display_name} is unreachable") from e

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{what}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{what}: unexpected response shape")
        return data

    def health_check(self) -> Dict[str, Any]:
        return {"configured": self.is_configured()}
