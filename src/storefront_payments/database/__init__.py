"""Database module: storefront order/payment tables and the SQL order store."""

from .models import (
    Base,
    Order,
    Payment,
    OrderEvent,
    PaymentStatus,
    PaymentProvider,
    OrderEventType,
)
from .session import (
    DatabaseManager,
    create_async_engine,
    create_session_factory,
    get_database_url,
)
from .repository import (
    OrderRepository,
    PaymentRepository,
    OrderEventRepository,
    SqlAlchemyOrderStore,
)

__all__ = [
    # Models
    "Base",
    "Order",
    "Payment",
    "OrderEvent",
    "PaymentStatus",
    "PaymentProvider",
    "OrderEventType",
    # Session management
    "DatabaseManager",
    "create_async_engine",
    "create_session_factory",
    "get_database_url",
    # Repositories
    "OrderRepository",
    "PaymentRepository",
    "OrderEventRepository",
    "SqlAlchemyOrderStore",
]
