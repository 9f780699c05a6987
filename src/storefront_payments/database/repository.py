"""Repository layer and the SQLAlchemy-backed order store."""

import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..store import OrderStore, OrderRecord
from .models import (
    Order,
    Payment,
    OrderEvent,
    PaymentStatus,
    OrderEventType,
)
from .session import DatabaseManager

logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for Order reads and guarded status updates."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_number(self, number: str) -> Optional[Order]:
        """Get an order by its human-facing number.

        Args:
            number: Order number.

        Returns:
            Order with payments loaded if found, None otherwise.
        """
        result = await self.session.execute(
            select(Order)
            .options(selectinload(Order.payments))
            .where(Order.number == number)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        """Get an order by its primary key.

        Args:
            order_id: Order ID.

        Returns:
            Order with payments loaded if found, None otherwise.
        """
        result = await self.session.execute(
            select(Order)
            .options(selectinload(Order.payments))
            .where(Order.id == order_id)
        )
        return result.scalar_one_or_none()

    async def transition_payment_status(
        self,
        order_id: str,
        new_status: str,
    ) -> bool:
        """Conditionally move an order out of the pending state.

        Issues a single ``UPDATE ... WHERE payment_status = 'pending'`` and
        checks the affected row count, so two concurrent callers cannot both
        succeed.

        Args:
            order_id: Order ID.
            new_status: Terminal payment status.

        Returns:
            True if exactly one row was updated.
        """
        now = datetime.utcnow()
        values: Dict[str, Any] = {"payment_status": new_status, "updated_at": now}
        if new_status == PaymentStatus.PAID.value:
            values["paid_at"] = now

        result = await self.session.execute(
            update(Order)
            .where(
                and_(
                    Order.id == order_id,
                    Order.payment_status == PaymentStatus.PENDING.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class PaymentRepository:
    """Repository for Payment reads and updates."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_provider_transaction_id(
        self,
        provider: str,
        provider_transaction_id: str,
    ) -> Optional[Payment]:
        """Get a payment by the provider's transaction identifier.

        Args:
            provider: Provider name.
            provider_transaction_id: Provider's transaction identifier.

        Returns:
            Payment instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.provider == provider,
                    Payment.provider_transaction_id == provider_transaction_id,
                )
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def set_provider_transaction_id(
        self,
        payment_id: str,
        provider_transaction_id: str,
    ) -> bool:
        """Set the provider transaction ID on a payment.

        Args:
            payment_id: Payment ID.
            provider_transaction_id: Identifier allocated by the provider.

        Returns:
            True if the payment row exists and was updated.
        """
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(
                provider_transaction_id=provider_transaction_id,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def settle(
        self,
        payment_id: str,
        new_status: str,
        provider_transaction_id: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        """Move a pending payment to a terminal status.

        Args:
            payment_id: Payment ID.
            new_status: Terminal payment status.
            provider_transaction_id: Optional provider transaction ID to record.
            provider_response: Verified provider payload to keep.
            error_code: Provider error/outcome code for failed attempts.

        Returns:
            True if the payment was still pending and got updated.
        """
        now = datetime.utcnow()
        response_json = json.dumps(provider_response, default=str) if provider_response is not None else None

        values: Dict[str, Any] = {
            "status": new_status,
            "updated_at": now,
            "provider_response_json": response_json,
            "error_code": error_code,
        }
        if provider_transaction_id:
            values["provider_transaction_id"] = provider_transaction_id
        if new_status == PaymentStatus.PAID.value:
            values["completed_at"] = now
        else:
            values["failed_at"] = now

        result = await self.session.execute(
            update(Payment)
            .where(
                and_(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.PENDING.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OrderEventRepository:
    """Repository for OrderEvent inserts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        order_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> OrderEvent:
        """Create a new order event record.

        Args:
            order_id: Associated order ID.
            event_type: Event type (payment_completed, payment_failed, ...).
            data: Event payload.

        Returns:
            Created OrderEvent instance.
        """
        event = OrderEvent(order_id=order_id, type=event_type)
        if data:
            event.data = data

        self.session.add(event)
        await self.session.flush()

        logger.debug(f"Created order event {event_type} for order {order_id}")
        return event


class SqlAlchemyOrderStore(OrderStore):
    """Order store backed by the storefront database.

    Each operation runs in its own short transaction obtained from the
    injected :class:`DatabaseManager`.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get_order_by_number(self, number: str) -> Optional[OrderRecord]:
        async with self.db.session() as session:
            order = await OrderRepository(session).get_by_number(number)
            return OrderRecord.model_validate(order) if order else None

    async def get_order_by_id(self, order_id: str) -> Optional[OrderRecord]:
        async with self.db.session() as session:
            order = await OrderRepository(session).get_by_id(order_id)
            return OrderRecord.model_validate(order) if order else None

    async def get_order_by_provider_transaction_id(
        self, provider: str, transaction_id: str
    ) -> Optional[OrderRecord]:
        async with self.db.session() as session:
            payment = await PaymentRepository(session).get_by_provider_transaction_id(
                provider, transaction_id
            )
            if payment is None:
                return None
            order = await OrderRepository(session).get_by_id(payment.order_id)
            return OrderRecord.model_validate(order) if order else None

    async def set_provider_transaction_id(self, payment_id: str, transaction_id: str) -> bool:
        async with self.db.session() as session:
            updated = await PaymentRepository(session).set_provider_transaction_id(
                payment_id, transaction_id
            )
        if updated:
            logger.info(f"Stored provider transaction {transaction_id} on payment {payment_id}")
        else:
            logger.warning(f"Payment {payment_id} not found while storing provider transaction id")
        return updated

    async def settle(
        self,
        order_id: str,
        payment_id: Optional[str],
        new_status: PaymentStatus,
        provider_transaction_id: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with self.db.session() as session:
            won = await OrderRepository(session).transition_payment_status(
                order_id, new_status.value
            )
            if not won:
                logger.info(f"Order {order_id} already left pending, transition to {new_status.value} skipped")
                return False

            if payment_id:
                payment_updated = await PaymentRepository(session).settle(
                    payment_id,
                    new_status.value,
                    provider_transaction_id=provider_transaction_id,
                    provider_response=provider_response,
                    error_code=error_code,
                )
                if not payment_updated:
                    logger.warning(f"Payment {payment_id} was not pending while settling order {order_id}")

            await OrderEventRepository(session).create(
                order_id=order_id,
                event_type=OrderEventType.for_status(new_status).value,
                data=event_data,
            )

        logger.info(f"Order {order_id} payment status set to {new_status.value}")
        return True
