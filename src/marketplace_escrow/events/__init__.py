"""Domain events for order, payment and escrow transitions."""

from marketplace_escrow.events.emitter import EventBatch, EventEmitter, log_event
from marketplace_escrow.events.types import (
    DomainEvent,
    EscrowDisputed,
    EscrowHoldCreated,
    EscrowRefunded,
    EscrowReleased,
    EscrowReleaseFailed,
    EventCategory,
    EventMetadata,
    OrderCancelled,
    OrderCompleted,
    OrderCreated,
    OrderDelivered,
    OrderDisputed,
    OrderPaid,
    OrderPaymentProcessing,
    OrderRefunded,
    PaymentFailed,
)

__all__ = [
    "DomainEvent",
    "EscrowDisputed",
    "EscrowHoldCreated",
    "EscrowRefunded",
    "EscrowReleaseFailed",
    "EscrowReleased",
    "EventBatch",
    "EventCategory",
    "EventEmitter",
    "EventMetadata",
    "OrderCancelled",
    "OrderCompleted",
    "OrderCreated",
    "OrderDelivered",
    "OrderDisputed",
    "OrderPaid",
    "OrderPaymentProcessing",
    "OrderRefunded",
    "PaymentFailed",
    "log_event",
]
