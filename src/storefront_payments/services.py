"""Payment initialization service."""

import logging
from typing import Dict

from .connectors.base import ConnectorBase, InitiationResult
from .errors import (
    InvalidOrderStateError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PaymentValidationError,
    ProviderNotConfiguredError,
    UnknownProviderError,
)
from .store import OrderStore

logger = logging.getLogger(__name__)


class PaymentInitService:
    """Starts a provider payment for an existing pending order."""

    def __init__(self, store: OrderStore, connectors: Dict[str, ConnectorBase]):
        """Initialize the service.

        Args:
            store: Order store used for reads and the transaction id write.
            connectors: Provider connectors keyed by provider name.
        """
        self.store = store
        self.connectors = connectors

    def get_connector(self, provider: str) -> ConnectorBase:
        connector = self.connectors.get(provider)
        if connector is None:
            raise UnknownProviderError(f"Unknown payment provider: {provider}")
        return connector

    async def initiate(self, order_number: str, provider: str, locale: str = "en") -> InitiationResult:
        """Validate the order and ask the provider for a redirect or form.

        Preconditions are checked in a fixed order and each has its own
        error, so the caller can tell them apart. Nothing is sent to the
        provider unless all of them pass.

        Args:
            order_number: Human-facing order number.
            provider: Provider name.
            locale: Two-letter UI language.

        Returns:
            The connector's initiation result, unchanged.

        Raises:
            ProviderNotConfiguredError: Provider credentials are missing.
            PaymentValidationError: Blank order number.
            OrderNotFoundError: No order with that number.
            InvalidOrderStateError: Order is no longer pending.
            PaymentNotFoundError: No pending payment for this provider.
            InvalidAmountError, InvalidCurrencyError: Provider cannot take the order.
            ProviderError: Provider refused or could not be reached.
        """
        connector = self.get_connector(provider)
        if not connector.is_configured():
            raise ProviderNotConfiguredError(f"{connector.display_name} payment is not configured")

        order_number = (order_number or "").strip()
        if not order_number:
            raise PaymentValidationError("orderNumber is required")

        order = await self.store.get_order_by_number(order_number)
        if order is None:
            raise OrderNotFoundError("Order not found")

        if not order.is_pending:
            raise InvalidOrderStateError("Order is already paid or cancelled")

        payment = order.find_payment(provider, pending_only=True)
        if payment is None:
            raise PaymentNotFoundError(f"No pending {connector.display_name} payment for this order")

        connector.validate_order(order)

        result = await connector.build_initiation(order, payment, locale)

        if result.provider_transaction_id:
            await self.store.set_provider_transaction_id(payment.id, result.provider_transaction_id)

        logger.info(f"Initiated {provider} payment {payment.id} for order {order.number}")
        return result
