"""Mapping a callback back to an order."""

import logging
from typing import Optional

from ..connectors.base import (
    CallbackNotification,
    ConnectorBase,
    ResolutionStrategy,
    decode_opaque_id,
)
from ..store import OrderRecord, OrderStore

logger = logging.getLogger(__name__)


class OrderResolver:
    """Tries a connector's resolution strategies in the order it declares them."""

    def __init__(self, store: OrderStore):
        self.store = store

    async def resolve(
        self,
        connector: ConnectorBase,
        notification: CallbackNotification,
    ) -> Optional[OrderRecord]:
        """Find the order a notification refers to.

        Args:
            connector: Connector that parsed the notification.
            notification: Parsed notification.

        Returns:
            The first order found, or None when every strategy misses.
        """
        for strategy in connector.resolution_strategies:
            order = await self._apply(strategy, connector, notification)
            if order is not None:
                logger.debug(
                    f"Resolved {connector.name.value} notification to order {order.number} via {strategy.value}"
                )
                return order
        return None

    async def _apply(
        self,
        strategy: ResolutionStrategy,
        connector: ConnectorBase,
        notification: CallbackNotification,
    ) -> Optional[OrderRecord]:
        ref = notification.order_ref

        if strategy is ResolutionStrategy.NUMBER:
            return await self.store.get_order_by_number(ref) if ref else None

        if strategy is ResolutionStrategy.ID:
            return await self.store.get_order_by_id(ref) if ref else None

        if strategy is ResolutionStrategy.DECODED_ID:
            if not ref:
                return None
            decoded = decode_opaque_id(ref)
            # undecodable refs were already tried as literals
            if decoded is None or decoded == ref:
                return None
            order = await self.store.get_order_by_id(decoded)
            if order is None:
                order = await self.store.get_order_by_number(decoded)
            return order

        if strategy is ResolutionStrategy.PROVIDER_TRANSACTION_ID:
            if not notification.provider_transaction_id:
                return None
            return await self.store.get_order_by_provider_transaction_id(
                connector.name.value, notification.provider_transaction_id
            )

        raise ValueError(f"Unsupported resolution strategy: {strategy}")
