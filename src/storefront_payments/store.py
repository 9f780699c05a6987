"""Order/payment state store interface and an in-memory implementation.

Services only talk to an :class:`OrderStore`. Every read returns a fresh
snapshot; nothing here caches payment state between calls.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field

from .database.models import PaymentStatus, OrderEventType

logger = logging.getLogger(__name__)


class PaymentRecord(BaseModel):
    """Read-only view of a Payment row."""
    id: str
    order_id: str
    provider: str
    status: PaymentStatus
    provider_transaction_id: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class OrderRecord(BaseModel):
    """Read-only view of an Order row with its payments."""
    id: str
    number: str
    total: Decimal
    currency: str
    payment_status: PaymentStatus
    customer_email: Optional[str] = None
    payments: List[PaymentRecord] = Field(default_factory=list)

    class Config:
        from_attributes = True
        frozen = True

    @property
    def is_pending(self) -> bool:
        return self.payment_status is PaymentStatus.PENDING

    def find_payment(self, provider: str, pending_only: bool = False) -> Optional[PaymentRecord]:
        """Return this order's payment for ``provider``, preferring a pending one."""
        candidates = [p for p in self.payments if p.provider == provider]
        pending = [p for p in candidates if p.status is PaymentStatus.PENDING]
        if pending:
            return pending[0]
        if pending_only or not candidates:
            return None
        return candidates[-1]


class OrderStore(ABC):
    """Storage operations the payments core depends on."""

    @abstractmethod
    async def get_order_by_number(self, number: str) -> Optional[OrderRecord]:
        raise NotImplementedError

    @abstractmethod
    async def get_order_by_id(self, order_id: str) -> Optional[OrderRecord]:
        raise NotImplementedError

    @abstractmethod
    async def get_order_by_provider_transaction_id(
        self, provider: str, transaction_id: str
    ) -> Optional[OrderRecord]:
        raise NotImplementedError

    @abstractmethod
    async def set_provider_transaction_id(self, payment_id: str, transaction_id: str) -> bool:
        """Store the provider's session/transaction id on a payment row."""
        raise NotImplementedError

    @abstractmethod
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
        """Move an order (and its payment) out of ``pending``.

        The write is conditional on the order still being pending at write
        time. Returns True if this call performed the transition, False if
        the order had already left ``pending``.
        """
        raise NotImplementedError


class InMemoryOrderStore(OrderStore):
    """Dictionary-backed store with the same conditional-update semantics.

    Used by tests and local demos. ``write_count`` counts effective writes.
    """

    def __init__(self):
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._payments: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.write_count = 0
        self._lock = asyncio.Lock()

    def add_order(
        self,
        number: str,
        total: Any,
        currency: str = "AMD",
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        customer_email: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> str:
        order_id = order_id or str(uuid.uuid4())
        self._orders[order_id] = {
            "id": order_id,
            "number": number,
            "total": Decimal(str(total)),
            "currency": currency,
            "payment_status": PaymentStatus(payment_status),
            "customer_email": customer_email,
            "paid_at": None,
        }
        return order_id

    def add_payment(
        self,
        order_id: str,
        provider: str,
        status: PaymentStatus = PaymentStatus.PENDING,
        provider_transaction_id: Optional[str] = None,
    ) -> str:
        payment_id = str(uuid.uuid4())
        self._payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "provider": provider,
            "status": PaymentStatus(status),
            "provider_transaction_id": provider_transaction_id,
            "provider_response": None,
            "error_code": None,
        }
        return payment_id

    def order_row(self, order_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._orders[order_id])

    def payment_row(self, payment_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._payments[payment_id])

    def _snapshot(self, order_id: str) -> OrderRecord:
        row = self._orders[order_id]
        payments = [
            PaymentRecord(
                id=p["id"],
                order_id=p["order_id"],
                provider=p["provider"],
                status=p["status"],
                provider_transaction_id=p["provider_transaction_id"],
            )
            for p in self._payments.values()
            if p["order_id"] == order_id
        ]
        return OrderRecord(
            id=row["id"],
            number=row["number"],
            total=row["total"],
            currency=row["currency"],
            payment_status=row["payment_status"],
            customer_email=row["customer_email"],
            payments=payments,
        )

    async def get_order_by_number(self, number: str) -> Optional[OrderRecord]:
        for order_id, row in self._orders.items():
            if row["number"] == number:
                return self._snapshot(order_id)
        return None

    async def get_order_by_id(self, order_id: str) -> Optional[OrderRecord]:
        if order_id in self._orders:
            return self._snapshot(order_id)
        return None

    async def get_order_by_provider_transaction_id(
        self, provider: str, transaction_id: str
    ) -> Optional[OrderRecord]:
        for payment in self._payments.values():
            if payment["provider"] == provider and payment["provider_transaction_id"] == transaction_id:
                return self._snapshot(payment["order_id"])
        return None

    async def set_provider_transaction_id(self, payment_id: str, transaction_id: str) -> bool:
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                return False
            payment["provider_transaction_id"] = transaction_id
            self.write_count += 1
            return True

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
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order["payment_status"] is not PaymentStatus.PENDING:
                return False

            order["payment_status"] = new_status
            if new_status is PaymentStatus.PAID:
                order["paid_at"] = datetime.utcnow()

            payment = self._payments.get(payment_id) if payment_id else None
            if payment is not None and payment["status"] is PaymentStatus.PENDING:
                payment["status"] = new_status
                if provider_transaction_id:
                    payment["provider_transaction_id"] = provider_transaction_id
                payment["provider_response"] = copy.deepcopy(provider_response)
                payment["error_code"] = error_code

            self.events.append({
                "order_id": order_id,
                "type": OrderEventType.for_status(new_status).value,
                "data": copy.deepcopy(event_data or {}),
            })
            self.write_count += 1
            logger.debug(f"Settled order {order_id} as {new_status.value}")
            return True
