"""Database package for the storefront payment service."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    AttemptCounter,
    Base,
    Order,
    OrderItem,
    Payment,
    PaymentEvent,
    Product,
    ReconciliationDiscrepancy,
)

__all__ = [
    "AttemptCounter",
    "Base",
    "Order",
    "OrderItem",
    "Payment",
    "PaymentEvent",
    "Product",
    "ReconciliationDiscrepancy",
    "get_db",
    "get_session_factory",
    "init_db",
]
