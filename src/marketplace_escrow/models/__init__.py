"""SQLAlchemy ORM models."""

from marketplace_escrow.models.base import Base, TimestampMixin
from marketplace_escrow.models.orders import Order
from marketplace_escrow.models.payments import EscrowHold, PaymentMethod, PaymentTransaction

__all__ = [
    "Base",
    "TimestampMixin",
    "Order",
    "PaymentTransaction",
    "EscrowHold",
    "PaymentMethod",
]
