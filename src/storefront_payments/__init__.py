# storefront_payments package
__version__ = "0.1.0"

# database first: store.py and the repositories import each other through it
from .database import (
    Order,
    Payment,
    OrderEvent,
    PaymentStatus,
    PaymentProvider,
    OrderEventType,
    DatabaseManager,
    SqlAlchemyOrderStore,
)
from .store import OrderStore, OrderRecord, PaymentRecord, InMemoryOrderStore
from .config import Settings
from .errors import PaymentError
from .services import PaymentInitService

from .reconciliation import (
    ReconciliationService,
    ReconciliationResult,
    ResultKind,
)
