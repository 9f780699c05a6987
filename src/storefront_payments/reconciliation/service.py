"""Callback and webhook reconciliation.

One algorithm for every provider: parse, resolve, verify, then move the
order out of ``pending`` with a conditional write. Repeated or concurrent
notifications for the same order end in at most one transition.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from ..connectors.base import CallbackChannel, CallbackNotification, ConnectorBase
from ..database.models import PaymentStatus
from ..errors import (
    AuthenticityError,
    MalformedNotificationError,
    ProviderUnavailableError,
    UnknownProviderError,
)
from ..store import OrderRecord, OrderStore
from .models import ReconciliationResult, RedirectReason, ResultKind
from .redirects import RedirectBuilder
from .resolver import OrderResolver

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("storefront_payments.security")

PaidHook = Callable[[OrderRecord], Awaitable[None]]


class ReconciliationService:
    """Applies provider notifications to the order store."""

    def __init__(
        self,
        store: OrderStore,
        connectors: Dict[str, ConnectorBase],
        app_url: str,
        paid_hooks: Optional[List[PaidHook]] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            store: Order store holding the authoritative payment state.
            connectors: Provider connectors keyed by provider name.
            app_url: Storefront base URL for checkout redirects.
            paid_hooks: Coroutines run once after an order becomes paid
                (receipt printing, cart clearing, e-mail).
        """
        self.store = store
        self.connectors = connectors
        self.resolver = OrderResolver(store)
        self.redirects = RedirectBuilder(app_url)
        self.paid_hooks: List[PaidHook] = list(paid_hooks or [])

    def get_connector(self, provider: str, channel: CallbackChannel) -> ConnectorBase:
        connector = self.connectors.get(provider)
        if connector is None or channel not in connector.supported_channels:
            raise UnknownProviderError(f"No {channel.value} callback for provider {provider}")
        return connector

    async def handle(
        self,
        provider: str,
        params: Mapping[str, str],
        channel: CallbackChannel,
    ) -> ReconciliationResult:
        """Process one provider notification.

        Args:
            provider: Provider name from the URL.
            params: Query, form or JSON fields of the request, flattened.
            channel: How the notification arrived.

        Returns:
            The result, carrying both the redirect and the acknowledgement.

        Raises:
            UnknownProviderError: No such provider, or it has no such channel.
            Exception: Store failures propagate so the provider retries.
        """
        connector = self.get_connector(provider, channel)

        if not connector.is_configured():
            logger.error(f"{provider} callback received but the provider is not configured")
            return self._result(
                connector, channel, ResultKind.RETRY,
                redirect_url=self.redirects.error(RedirectReason.UNAVAILABLE),
                ack_status=503,
                ack_body="",
                reason="not_configured",
            )

        try:
            notification = connector.parse_callback(params, channel)
        except MalformedNotificationError as e:
            logger.warning(f"Ignoring malformed {provider} {channel.value} callback: {e.detail}")
            return self._result(
                connector, channel, ResultKind.IGNORED,
                redirect_url=self.redirects.error(RedirectReason.MISSING_PARAMS),
                reason=RedirectReason.MISSING_PARAMS.value,
            )

        order = await self.resolver.resolve(connector, notification)

        if notification.is_precheck:
            return self._precheck(connector, channel, notification, order)

        if order is None:
            logger.warning(
                f"{provider} {channel.value} callback for unknown order ref={notification.order_ref} "
                f"txn={notification.provider_transaction_id}"
            )
            return self._result(
                connector, channel, ResultKind.IGNORED,
                redirect_url=self.redirects.error(RedirectReason.ORDER_NOT_FOUND),
                reason=RedirectReason.ORDER_NOT_FOUND.value,
            )

        if channel is CallbackChannel.RETURN and not connector.settles_on_return:
            return self._return_only(connector, channel, order, params)

        payment = order.find_payment(provider)
        if payment is None:
            return self._rejected(
                connector, channel, order, f"order {order.number} has no {provider} payment"
            )

        try:
            outcome = await connector.verify_callback(notification, order)
        except AuthenticityError as e:
            return self._rejected(connector, channel, order, e.detail)
        except ProviderUnavailableError as e:
            logger.error(f"Could not verify {provider} callback for order {order.number}: {e.detail}")
            return self._result(
                connector, channel, ResultKind.RETRY,
                order=order,
                redirect_url=self.redirects.error(RedirectReason.UNAVAILABLE, order.number),
                ack_status=503,
                ack_body="",
                reason=RedirectReason.UNAVAILABLE.value,
            )

        if not order.is_pending:
            logger.info(
                f"{provider} callback for order {order.number} already {order.payment_status.value}, nothing to do"
            )
            return self._result(
                connector, channel, ResultKind.ALREADY_SETTLED,
                order=order,
                redirect_url=self.redirects.for_status(order.payment_status, order.number),
            )

        if outcome.status is PaymentStatus.PENDING:
            logger.info(f"{provider} reports order {order.number} still in progress ({outcome.outcome_code})")
            return self._result(
                connector, channel, ResultKind.PENDING,
                order=order,
                redirect_url=self.redirects.error(RedirectReason.PENDING, order.number),
                reason=RedirectReason.PENDING.value,
            )

        won = await self.store.settle(
            order.id,
            payment.id,
            outcome.status,
            provider_transaction_id=outcome.provider_transaction_id,
            provider_response=outcome.provider_response,
            error_code=None if outcome.status is PaymentStatus.PAID else outcome.outcome_code,
            event_data={
                "provider": provider,
                "channel": channel.value,
                "provider_transaction_id": outcome.provider_transaction_id,
                "outcome_code": outcome.outcome_code,
            },
        )

        if not won:
            # Another notification settled the order between our read and write
            current = await self.store.get_order_by_id(order.id)
            status = current.payment_status if current is not None else outcome.status
            logger.info(f"Lost settle race for order {order.number}; stored status is {status.value}")
            return self._result(
                connector, channel, ResultKind.ALREADY_SETTLED,
                order=order,
                payment_status=status,
                redirect_url=self.redirects.for_status(status, order.number),
            )

        logger.info(f"Order {order.number} settled as {outcome.status.value} by {provider} {channel.value}")
        if outcome.status is PaymentStatus.PAID:
            await self._run_paid_hooks(order)

        return self._result(
            connector, channel, ResultKind.SETTLED,
            order=order,
            payment_status=outcome.status,
            redirect_url=self.redirects.for_status(outcome.status, order.number),
        )

    def _precheck(
        self,
        connector: ConnectorBase,
        channel: CallbackChannel,
        notification: CallbackNotification,
        order: Optional[OrderRecord],
    ) -> ReconciliationResult:
        rejection = connector.check_precheck(notification, order)
        number = order.number if order else notification.order_ref
        if rejection:
            logger.info(f"{connector.name.value} precheck rejected for {number}: {rejection}")
            return self._result(
                connector, channel, ResultKind.PRECHECK_REJECTED,
                order=order,
                redirect_url=self.redirects.error(RedirectReason.DECLINED, number),
                ack_body=rejection,
                reason=rejection,
            )
        logger.info(f"{connector.name.value} precheck accepted for order {number}")
        return self._result(
            connector, channel, ResultKind.PRECHECK_OK,
            order=order,
            redirect_url=self.redirects.success(number),
            ack_body="OK",
        )

    def _return_only(
        self,
        connector: ConnectorBase,
        channel: CallbackChannel,
        order: OrderRecord,
        params: Mapping[str, str],
    ) -> ReconciliationResult:
        if order.is_pending:
            hint = connector.return_hint(params)
            return self._result(
                connector, channel, ResultKind.PENDING,
                order=order,
                redirect_url=self.redirects.for_hint(hint, order.number),
            )
        return self._result(
            connector, channel, ResultKind.ALREADY_SETTLED,
            order=order,
            redirect_url=self.redirects.for_status(order.payment_status, order.number),
        )

    def _rejected(
        self,
        connector: ConnectorBase,
        channel: CallbackChannel,
        order: OrderRecord,
        reason: str,
    ) -> ReconciliationResult:
        security_logger.warning(
            "callback_authenticity_failed",
            extra={
                "provider": connector.name.value,
                "channel": channel.value,
                "order_number": order.number,
                "reason": reason,
            },
        )
        if order.is_pending:
            redirect = self.redirects.error(RedirectReason.VERIFICATION_FAILED, order.number)
        else:
            redirect = self.redirects.for_status(order.payment_status, order.number)
        return self._result(
            connector, channel, ResultKind.REJECTED,
            order=order,
            redirect_url=redirect,
            reason=RedirectReason.VERIFICATION_FAILED.value,
        )

    async def _run_paid_hooks(self, order: OrderRecord) -> None:
        for hook in self.paid_hooks:
            try:
                await hook(order)
            except Exception:
                logger.exception(f"Paid hook {getattr(hook, '__name__', hook)!r} failed for order {order.number}")

    def _result(
        self,
        connector: ConnectorBase,
        channel: CallbackChannel,
        kind: ResultKind,
        redirect_url: str,
        order: Optional[OrderRecord] = None,
        payment_status: Optional[PaymentStatus] = None,
        ack_status: int = 200,
        ack_body: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ReconciliationResult:
        if payment_status is None and order is not None:
            payment_status = order.payment_status
        return ReconciliationResult(
            kind=kind,
            provider=connector.name.value,
            channel=channel,
            order_number=order.number if order else None,
            payment_status=payment_status,
            redirect_url=redirect_url,
            ack_status=ack_status,
            ack_body=connector.ack_body if ack_body is None else ack_body,
            reason=reason,
        )
