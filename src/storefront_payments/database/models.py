"""SQLAlchemy models for the order/payment tables this core reads and writes."""

import uuid
import json
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Status values shared by Order.payment_status and Payment.status."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentProvider(str, enum.Enum):
    """Supported payment gateways."""
    AMERIABANK = "ameriabank"
    FASTSHIFT = "fastshift"
    IDRAM = "idram"
    TELCELL = "telcell"


class OrderEventType(str, enum.Enum):
    """Order audit events written alongside a payment transition."""
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"

    @classmethod
    def for_status(cls, status: PaymentStatus) -> "OrderEventType":
        return {
            PaymentStatus.PAID: cls.PAYMENT_COMPLETED,
            PaymentStatus.CANCELLED: cls.PAYMENT_CANCELLED,
        }.get(status, cls.PAYMENT_FAILED)


class Order(Base):
    """Storefront order; only the payment-related columns are modelled."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AMD")
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="Payment.created_at",
    )
    events: Mapped[List["OrderEvent"]] = relationship(
        "OrderEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderEvent.created_at",
    )

    __table_args__ = (
        Index("ix_orders_payment_status", "payment_status"),
    )


class Payment(Base):
    """One payment attempt of an order through one provider."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Verified provider payload, kept for support and disputes
    provider_response_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    order: Mapped["Order"] = relationship("Order", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_provider_transaction", "provider", "provider_transaction_id"),
        Index("ix_payments_order_provider", "order_id", "provider"),
    )

    @property
    def provider_response(self) -> Optional[Dict[str, Any]]:
        """Get the stored provider response as dictionary."""
        if self.provider_response_json:
            return json.loads(self.provider_response_json)
        return None

    @provider_response.setter
    def provider_response(self, value: Optional[Dict[str, Any]]) -> None:
        if value is not None:
            self.provider_response_json = json.dumps(value, default=str)
        else:
            self.provider_response_json = None


class OrderEvent(Base):
    """Audit trail entry for an order."""
    __tablename__ = "order_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    order: Mapped["Order"] = relationship("Order", back_populates="events")

    @property
    def data(self) -> Optional[Dict[str, Any]]:
        if self.data_json:
            return json.loads(self.data_json)
        return None

    @data.setter
    def data(self, value: Optional[Dict[str, Any]]) -> None:
        if value is not None:
            self.data_json = json.dumps(value, default=str)
        else:
            self.data_json = None
