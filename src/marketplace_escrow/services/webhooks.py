"""Inbound provider webhooks.

Verifies the signature on the raw body, then applies the event to the
journal, the order and the escrow ledger. Every handler is idempotent:
providers retry deliveries, and the payment attempt being finalized (or the
hold being already disputed) turns a repeat into a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from marketplace_escrow.models import PaymentTransaction
from marketplace_escrow.providers.base import WebhookEvent
from marketplace_escrow.services.actors import SYSTEM_ACTOR
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.state_machine import EscrowStatus, OrderStateMachine

logger = logging.getLogger(__name__)

CHARGEBACK_REASON = "Chargeback opened with payment provider"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    handled: bool
    detail: str = ""


class WebhookService:
    """Dispatches verified provider events."""

    def __init__(self, orders: OrderService):
        self.orders = orders
        self.provider = orders.provider
        self.journal = orders.journal
        self.ledger = orders.ledger
        self._handlers = {
            "payment.succeeded": self._payment_succeeded,
            "payment.failed": self._payment_failed,
            "payment.processing": self._payment_processing,
            "refund.succeeded": self._refund_succeeded,
            "refund.failed": self._refund_failed,
            "dispute.created": self._dispute_created,
        }

    async def handle(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """Verify and apply one delivery.

        Raises WebhookSignatureError on a bad signature. Unknown event types
        and events for unknown transactions are acknowledged and ignored.
        """
        event = self.provider.verify_webhook(payload, signature)
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Ignoring webhook event %s (%s)", event.event_id, event.event_type)
            return WebhookOutcome(event.event_id, event.event_type, False, "unhandled event type")

        txn = None
        if event.provider_transaction_id:
            txn = await self.journal.find_by_provider_id(
                self.provider.provider_name, event.provider_transaction_id
            )
        if txn is None:
            logger.warning(
                "Webhook %s (%s) references unknown transaction %s",
                event.event_id,
                event.event_type,
                event.provider_transaction_id,
            )
            return WebhookOutcome(event.event_id, event.event_type, False, "unknown transaction")

        detail = await handler(event, txn)
        return WebhookOutcome(event.event_id, event.event_type, True, detail)

    async def _payment_succeeded(self, event: WebhookEvent, txn: PaymentTransaction) -> str:
        order = await self.orders.settle_payment(txn)
        return f"order {order.status}"

    async def _payment_failed(self, event: WebhookEvent, txn: PaymentTransaction) -> str:
        reason = event.data.get("failure_message") or event.data.get("message") or "Payment failed"
        order = await self.orders.fail_payment(txn, str(reason))
        return f"order {order.status}"

    async def _payment_processing(self, event: WebhookEvent, txn: PaymentTransaction) -> str:
        logger.info("Payment %s still processing", txn.id)
        return "processing"

    async def _refund_succeeded(self, event: WebhookEvent, txn: PaymentTransaction) -> str:
        logger.info("Provider confirmed refund for payment %s", txn.id)
        return "refund confirmed"

    async def _refund_failed(self, event: WebhookEvent, txn: PaymentTransaction) -> str:
        logger.error(
            "Provider reports failed refund for payment %s on order %s; needs manual review",
            txn.id,
            txn.order_id,
        )
        return "refund failed"

    async def _dispute_created(self, event: WebhookEvent, txn: PaymentTransaction) -> str:
        hold = await self.ledger.active_hold_for_order(txn.order_id)
        if hold is None or hold.status != EscrowStatus.HELD.value:
            logger.warning("Chargeback on order %s with no held escrow", txn.order_id)
            return "no held escrow"
        order = await self.orders.get_order(txn.order_id)
        if order.status not in {s.value for s in OrderStateMachine.DISPUTABLE}:
            logger.warning(
                "Chargeback on order %s in status %s not applied", order.id, order.status
            )
            return "not disputable"

        await self.ledger.dispute(
            hold.id,
            reason=CHARGEBACK_REASON,
            disputed_by=SYSTEM_ACTOR,
            details={"provider_event_id": event.event_id, **event.data},
        )
        return "escrow disputed"
