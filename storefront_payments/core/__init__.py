"""Core order and payment logic."""
from .attempt_guard import AttemptGuard, LockoutPolicy, build_attempt_guard
from .orders import OrderStatus, OrderStore
from .payments import PaymentMethod, PaymentStatus, PaymentStore

__all__ = [
    "AttemptGuard",
    "LockoutPolicy",
    "OrderStatus",
    "OrderStore",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentStore",
    "build_attempt_guard",
]
