"""Core services: order state machine, escrow ledger, transaction journal."""

from marketplace_escrow.services.actors import Actor
from marketplace_escrow.services.config import EscrowConfig, FeeConfig, OrderConfig
from marketplace_escrow.services.escrow_ledger import (
    AUTO_RELEASE_REASON,
    EscrowLedger,
    SweepResult,
)
from marketplace_escrow.services.fees import FeeBreakdown, FeeCalculator
from marketplace_escrow.services.journal import (
    TransactionContext,
    TransactionJournal,
    TransactionType,
)
from marketplace_escrow.services.order_service import (
    ListingSnapshot,
    OrderPage,
    OrderService,
    OrderUpdate,
    PaymentOutcome,
    UpdateResult,
)
from marketplace_escrow.services.payment_methods import PaymentMethodService
from marketplace_escrow.services.state_machine import (
    DeliveryStatus,
    EscrowStateMachine,
    EscrowStatus,
    OrderStateMachine,
    OrderStatus,
    ReleaseCondition,
)
from marketplace_escrow.services.webhooks import WebhookOutcome, WebhookService

__all__ = [
    "AUTO_RELEASE_REASON",
    "Actor",
    "DeliveryStatus",
    "EscrowConfig",
    "EscrowLedger",
    "EscrowStateMachine",
    "EscrowStatus",
    "FeeBreakdown",
    "FeeCalculator",
    "FeeConfig",
    "ListingSnapshot",
    "OrderConfig",
    "OrderPage",
    "OrderService",
    "OrderStateMachine",
    "OrderStatus",
    "OrderUpdate",
    "PaymentMethodService",
    "PaymentOutcome",
    "ReleaseCondition",
    "SweepResult",
    "TransactionContext",
    "TransactionJournal",
    "TransactionType",
    "UpdateResult",
    "WebhookOutcome",
    "WebhookService",
]
