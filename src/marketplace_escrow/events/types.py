"""Events published when orders, payments and escrow holds change state.

Collaborators (notifications, chat, seller dashboards) subscribe to these
instead of polling order status. Every event is a frozen dataclass whose
metadata ties it back to the order it concerns.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import singledispatch
from typing import Any, ClassVar
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    ORDER = "order"
    PAYMENT = "payment"
    ESCROW = "escrow"


@dataclass(frozen=True)
class EventMetadata:
    """Who caused an event, when, and which order it belongs to."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # the order id for everything the services emit
    actor_id: str | None  # None for the sweep and webhooks
    actor_type: str  # user, admin, system, webhook
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        timestamp: datetime,
        correlation_id: UUID | None = None,
        actor_id: str | None = None,
        actor_type: str = "system",
        source_service: str = "marketplace_escrow",
    ) -> EventMetadata:
        return cls(
            event_id=uuid4(),
            timestamp=timestamp,
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@singledispatch
def _jsonable(value: Any) -> Any:
    return value


@_jsonable.register
def _(value: dict) -> Any:
    return {key: _jsonable(item) for key, item in value.items()}


@_jsonable.register
def _(value: list) -> Any:
    return [_jsonable(item) for item in value]


@_jsonable.register(UUID)
@_jsonable.register(Decimal)
def _(value: Any) -> Any:
    return str(value)


@_jsonable.register
def _(value: date) -> Any:
    return value.isoformat()


@_jsonable.register
def _(value: Enum) -> Any:
    return value.value


@dataclass(frozen=True)
class DomainEvent:
    """Base class; subclasses set ``category`` and add their payload fields."""

    category: ClassVar[EventCategory]

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event_type"] = self.event_type
        payload["category"] = self.category.value
        return _jsonable(payload)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Order Events
# =============================================================================


@dataclass(frozen=True)
class _OrderEvent(DomainEvent):
    order_id: UUID
    buyer_id: UUID
    seller_id: UUID

    category: ClassVar[EventCategory] = EventCategory.ORDER


@dataclass(frozen=True)
class OrderCreated(_OrderEvent):
    """Checkout created a pending order."""

    order_number: str
    total_amount: Decimal
    currency: str
    expires_at: datetime | None


@dataclass(frozen=True)
class OrderPaid(_OrderEvent):
    """Payment secured; funds are in escrow."""

    transaction_id: UUID
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class OrderPaymentProcessing(_OrderEvent):
    """Provider accepted the payment but has not settled it yet."""

    transaction_id: UUID


@dataclass(frozen=True)
class OrderCancelled(_OrderEvent):
    reason: str


@dataclass(frozen=True)
class OrderDelivered(_OrderEvent):
    delivered_at: datetime


@dataclass(frozen=True)
class OrderCompleted(_OrderEvent):
    completed_at: datetime


@dataclass(frozen=True)
class OrderDisputed(_OrderEvent):
    reason: str


@dataclass(frozen=True)
class OrderRefunded(_OrderEvent):
    amount: Decimal
    reason: str


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """A payment attempt was rejected by the provider."""

    order_id: UUID
    transaction_id: UUID
    error_code: str
    message: str

    category: ClassVar[EventCategory] = EventCategory.PAYMENT


# =============================================================================
# Escrow Events
# =============================================================================


@dataclass(frozen=True)
class _EscrowEvent(DomainEvent):
    hold_id: UUID
    order_id: UUID

    category: ClassVar[EventCategory] = EventCategory.ESCROW


@dataclass(frozen=True)
class EscrowHoldCreated(_EscrowEvent):
    amount: Decimal
    currency: str
    auto_release_at: datetime | None


@dataclass(frozen=True)
class EscrowReleased(_EscrowEvent):
    amount: Decimal
    partial: bool
    released_by: str
    reason: str


@dataclass(frozen=True)
class EscrowDisputed(_EscrowEvent):
    reason: str
    disputed_by: str


@dataclass(frozen=True)
class EscrowRefunded(_EscrowEvent):
    amount: Decimal
    refunded_by: str
    reason: str


@dataclass(frozen=True)
class EscrowReleaseFailed(_EscrowEvent):
    """Auto-release could not capture funds; the hold stays held."""

    error_code: str
    message: str
