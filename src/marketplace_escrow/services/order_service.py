"""Order service - the order state machine in motion.

Validates who may do what to an order, drives the payment provider and
escrow ledger, and records every provider interaction in the journal.
Each operation is one linear sequence: validate, call the provider,
persist, cascade. All status writes are guarded on the status the
operation started from, so racing callers (pay twice, pay and cancel)
cannot both win.

Routes commit on success. The two exceptions are a failed payment and an
expired order: both persist their outcome (failed journal row, cancelled
order) and commit before raising.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.clock import Clock
from marketplace_escrow.database import guarded_update
from marketplace_escrow.errors import (
    AuthenticationError,
    AuthorizationError,
    InternalError,
    InvalidAmountError,
    InvalidPaymentMethodError,
    InvalidStateError,
    NotFoundError,
    OrderExpiredError,
    PaymentError,
    ValidationError,
)
from marketplace_escrow.events import (
    EventEmitter,
    EventMetadata,
    OrderCancelled,
    OrderCreated,
    OrderDelivered,
    OrderPaid,
    OrderPaymentProcessing,
    OrderRefunded,
    PaymentFailed,
)
from marketplace_escrow.models import EscrowHold, Order, PaymentMethod, PaymentTransaction
from marketplace_escrow.providers.base import (
    SECURED_STATUSES,
    PaymentMethodRef,
    PaymentProvider,
    PaymentRequest,
    PaymentResult,
    TransactionStatus,
)
from marketplace_escrow.services.actors import Actor
from marketplace_escrow.services.config import EscrowConfig, OrderConfig
from marketplace_escrow.services.escrow_ledger import EscrowLedger
from marketplace_escrow.services.fees import FeeCalculator
from marketplace_escrow.services.journal import (
    TransactionContext,
    TransactionJournal,
    TransactionType,
)
from marketplace_escrow.services.state_machine import (
    DeliveryStatus,
    EscrowStatus,
    OrderStateMachine,
    OrderStatus,
    ReleaseCondition,
    status_value,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50

# Which party may write each free-form field
FIELD_OWNERS = {
    "seller_notes": "seller",
    "buyer_notes": "buyer",
    "delivery_instructions": "buyer",
}


@dataclass(frozen=True)
class ListingSnapshot:
    """Listing data supplied by the listing collaborator at checkout."""

    listing_id: UUID
    seller_id: UUID
    unit_price: Decimal
    currency: str = "USD"
    available_quantity: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of processing an order payment."""

    order: Order
    transaction: PaymentTransaction
    result: PaymentResult
    hold: EscrowHold | None = None

    @property
    def completed(self) -> bool:
        return self.result.status in SECURED_STATUSES


@dataclass(frozen=True)
class OrderUpdate:
    """Partial order update. None means "leave unchanged"."""

    status: str | None = None
    seller_notes: str | None = None
    buyer_notes: str | None = None
    delivery_instructions: str | None = None
    delivery_proof: list[Any] | None = None
    reason: str | None = None


@dataclass(frozen=True)
class UpdateResult:
    order: Order
    dropped_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderPage:
    """One page of an order listing, newest first."""

    items: list[Order]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit)


class OrderService:
    """Order lifecycle operations."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        *,
        clock: Clock,
        journal: TransactionJournal | None = None,
        ledger: EscrowLedger | None = None,
        emitter: EventEmitter | None = None,
        config: OrderConfig | None = None,
        escrow_config: EscrowConfig | None = None,
        fees: FeeCalculator | None = None,
    ):
        self.session = session
        self.provider = provider
        self.clock = clock
        self.emitter = emitter or EventEmitter()
        self.config = config or OrderConfig()
        self.escrow_config = escrow_config or EscrowConfig()
        self.fees = fees or FeeCalculator()
        self.journal = journal or TransactionJournal(session, clock)
        self.ledger = ledger or EscrowLedger(
            session,
            provider,
            self.journal,
            clock=clock,
            emitter=self.emitter,
            config=self.escrow_config,
        )

    def _metadata(self, order: Order, actor: Actor) -> EventMetadata:
        return EventMetadata.create(
            timestamp=self.clock.now(),
            correlation_id=order.id,
            actor_id=None if actor.is_system else actor.label,
            actor_type=actor.actor_type,
        )

    # Queries

    async def get_order(self, order_id: UUID, *, for_update: bool = False) -> Order:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def get_order_for(self, order_id: UUID, actor: Actor) -> Order:
        """Order detail, visible to its buyer, its seller and admins."""
        order = await self.get_order(order_id)
        if not (actor.is_admin or order.is_party(actor.user_id)):
            raise AuthorizationError("Access denied")
        return order

    async def get_escrow_for(self, order_id: UUID, actor: Actor) -> EscrowHold:
        await self.get_order_for(order_id, actor)
        return await self.ledger.get_escrow_status(order_id)

    async def list_orders(
        self,
        actor: Actor,
        *,
        role: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        """Orders the actor bought or sold, optionally narrowed to one side.

        Admins without a role filter see every order.
        """
        if actor.user_id is None:
            raise AuthenticationError("Authentication required")
        if role not in (None, "buyer", "seller"):
            raise ValidationError("Role must be buyer or seller")
        if status is not None and status not in {s.value for s in OrderStatus}:
            raise ValidationError(f"Unknown order status: {status}")
        if page < 1:
            raise ValidationError("Page must be at least 1")
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        conditions = []
        if role == "buyer":
            conditions.append(Order.buyer_id == actor.user_id)
        elif role == "seller":
            conditions.append(Order.seller_id == actor.user_id)
        elif not actor.is_admin:
            conditions.append(
                or_(Order.buyer_id == actor.user_id, Order.seller_id == actor.user_id)
            )
        if status is not None:
            conditions.append(Order.status == status)

        total = await self.session.scalar(
            select(func.count()).select_from(Order).where(*conditions)
        )
        result = await self.session.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id)
            .limit(limit)
            .offset((page - 1) * limit)
        )
        return OrderPage(
            items=list(result.scalars().all()), total=total or 0, page=page, limit=limit
        )

    async def list_transactions_for(
        self, order_id: UUID, actor: Actor, type: TransactionType | None = None
    ) -> list[PaymentTransaction]:
        """Journal rows of an order, oldest first, for its parties and admins."""
        order = await self.get_order_for(order_id, actor)
        return await self.journal.list_for_order(order.id, type)

    # Checkout

    async def create_order(
        self,
        buyer: Actor,
        listing: ListingSnapshot,
        quantity: int = 1,
        *,
        buyer_notes: str | None = None,
        delivery_instructions: str | None = None,
    ) -> Order:
        """Create a pending order that must be paid within the expiry window."""
        if buyer.user_id is None:
            raise AuthenticationError("Authentication required")
        if listing.seller_id == buyer.user_id:
            raise ValidationError("Cannot purchase your own listing")
        if not listing.is_active:
            raise ValidationError("Listing is not available")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if listing.available_quantity is not None and quantity > listing.available_quantity:
            raise ValidationError("Insufficient stock available")

        subtotal = listing.unit_price * quantity
        self.fees.validate_amount(subtotal)
        breakdown = self.fees.calculate(subtotal, listing.currency)

        now = self.clock.now()
        order = Order(
            id=uuid4(),
            order_number=f"ORD-{int(now.timestamp() * 1000)}-{secrets.token_hex(3).upper()}",
            listing_id=listing.listing_id,
            buyer_id=buyer.user_id,
            seller_id=listing.seller_id,
            quantity=quantity,
            unit_price=listing.unit_price,
            total_amount=breakdown.total_amount,
            platform_fee=breakdown.platform_fee,
            processing_fee=breakdown.processing_fee,
            seller_amount=breakdown.seller_amount,
            currency=listing.currency,
            status=OrderStatus.PENDING.value,
            payment_status="pending",
            delivery_status=DeliveryStatus.PENDING.value,
            expires_at=now + timedelta(hours=self.config.expiry_hours),
            buyer_notes=buyer_notes,
            delivery_instructions=delivery_instructions,
            delivery_proof=[],
            created_at=now,
            updated_at=now,
        )
        self.session.add(order)
        await self.session.flush()

        self.emitter.emit(
            OrderCreated(
                metadata=self._metadata(order, buyer),
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                order_number=order.order_number,
                total_amount=order.total_amount,
                currency=order.currency,
                expires_at=order.expires_at,
            )
        )
        return order

    # Payment

    async def process_payment(
        self,
        order_id: UUID,
        actor: Actor,
        payment_method_id: UUID,
        *,
        context: TransactionContext | None = None,
    ) -> PaymentOutcome:
        """Charge the buyer and move the order to paid (or processing).

        On a secured payment the seller's share goes into a 72 hour escrow
        hold. A provider failure is journalled and re-raised with the order
        left pending.
        """
        order = await self.get_order(order_id, for_update=True)

        if actor.user_id != order.buyer_id:
            raise AuthorizationError("Only the buyer can pay for this order")
        if order.status != OrderStatus.PENDING.value:
            raise InvalidStateError(
                f"Order is {order.status}, payment requires a pending order",
                from_status=order.status,
                to_status=OrderStatus.PAID.value,
            )

        now = self.clock.now()
        if order.expires_at is not None and now > order.expires_at:
            await self._expire(order, actor)
            await self.session.commit()
            raise OrderExpiredError("Order has expired")

        open_payment = await self.journal.latest_payment(
            order.id, [TransactionStatus.PENDING, TransactionStatus.PROCESSING]
        )
        if open_payment is not None and open_payment.processed_at is None:
            raise InvalidStateError(
                "A payment for this order is still awaiting confirmation",
                from_status=order.status,
                to_status=OrderStatus.PAID.value,
            )

        method = await self.session.get(PaymentMethod, payment_method_id)
        if method is None or method.user_id != order.buyer_id or not method.is_active:
            raise InvalidPaymentMethodError("Invalid or inactive payment method")

        context = context or TransactionContext()
        request = PaymentRequest(
            order_id=str(order.id),
            payment_method=PaymentMethodRef.from_masked_details(
                str(method.id), method.type, method.masked_details or {}
            ),
            amount=order.total_amount,
            currency=order.currency,
            description=f"Order {order.order_number}",
            metadata={
                "order_number": order.order_number,
                "buyer_id": str(order.buyer_id),
                "seller_id": str(order.seller_id),
            },
            ip_address=context.ip_address,
        )

        try:
            result = await self.provider.process_payment(request)
        except PaymentError as e:
            await self._record_failed_payment(order, actor, method, context, e.code, e.message)
            raise
        except Exception as e:
            logger.exception("Unexpected provider failure for order %s", order.id)
            await self._record_failed_payment(
                order, actor, method, context, "INTERNAL_ERROR", "Unexpected provider error"
            )
            raise InternalError("Payment processing failed") from e

        txn = await self.journal.record(
            order_id=order.id,
            type=TransactionType.PAYMENT,
            amount=result.amount,
            currency=result.currency,
            provider=self.provider.provider_name,
            provider_transaction_id=result.transaction_id,
            status=result.status,
            context=context,
            payment_method_id=method.id,
            provider_response=result.raw,
            risk_score=result.risk_score,
        )

        hold = None
        if result.status in SECURED_STATUSES:
            moved = await guarded_update(
                self.session,
                order,
                [OrderStatus.PENDING],
                {
                    "status": OrderStatus.PAID,
                    "paid_at": now,
                    "payment_status": result.status,
                },
                now=self.clock.now(),
            )
            if not moved:
                await self._compensate(order, txn, result)
            hold = await self._open_payment_hold(order, txn, actor)
            self.emitter.emit(
                OrderPaid(
                    metadata=self._metadata(order, actor),
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    seller_id=order.seller_id,
                    transaction_id=txn.id,
                    amount=txn.amount,
                    currency=txn.currency,
                )
            )
        elif result.status == TransactionStatus.PROCESSING:
            moved = await guarded_update(
                self.session,
                order,
                [OrderStatus.PENDING],
                {"status": OrderStatus.PROCESSING, "payment_status": result.status},
                now=self.clock.now(),
            )
            if not moved:
                await self._compensate(order, txn, result)
            self.emitter.emit(
                OrderPaymentProcessing(
                    metadata=self._metadata(order, actor),
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    seller_id=order.seller_id,
                    transaction_id=txn.id,
                )
            )
        else:
            # Customer action (3-D Secure) outstanding; the order stays pending.
            await guarded_update(
                self.session,
                order,
                [OrderStatus.PENDING],
                {"payment_status": result.status},
                now=self.clock.now(),
            )

        logger.info(
            "Payment for order %s: %s (%s)",
            order.id,
            status_value(result.status),
            result.transaction_id,
        )
        return PaymentOutcome(order=order, transaction=txn, result=result, hold=hold)

    async def _record_failed_payment(
        self,
        order: Order,
        actor: Actor,
        method: PaymentMethod,
        context: TransactionContext,
        code: str,
        message: str,
    ) -> None:
        txn = await self.journal.record(
            order_id=order.id,
            type=TransactionType.PAYMENT,
            amount=order.total_amount,
            currency=order.currency,
            provider=self.provider.provider_name,
            provider_transaction_id=None,
            status=TransactionStatus.FAILED,
            context=context,
            payment_method_id=method.id,
            provider_response={"code": code},
            failure_reason=message,
        )
        await self.session.commit()
        logger.warning("Payment failed for order %s: %s", order.id, code)
        self.emitter.emit(
            PaymentFailed(
                metadata=self._metadata(order, actor),
                order_id=order.id,
                transaction_id=txn.id,
                error_code=code,
                message=message,
            )
        )

    async def _open_payment_hold(
        self, order: Order, txn: PaymentTransaction, actor: Actor
    ) -> EscrowHold:
        return await self.ledger.create_hold(
            order_id=order.id,
            transaction_id=txn.id,
            amount=order.seller_amount,
            currency=order.currency,
            hold_for=timedelta(hours=self.escrow_config.payment_hold_hours),
            release_condition=ReleaseCondition.AUTO_RELEASE_OR_BUYER_CONFIRMATION,
            created_by=actor.label,
        )

    async def _refund_charge(
        self,
        order: Order,
        provider_transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: str,
    ) -> bool:
        """Give back a charge the order cannot keep. Failures are journalled for review."""
        try:
            refund = await self.provider.refund_payment(provider_transaction_id, amount, reason)
        except PaymentError as e:
            logger.exception("Refund of stray payment %s failed", provider_transaction_id)
            await self.journal.record(
                order_id=order.id,
                type=TransactionType.REFUND,
                amount=amount,
                currency=currency,
                provider=self.provider.provider_name,
                provider_transaction_id=provider_transaction_id,
                status=TransactionStatus.FAILED,
                failure_reason=e.message,
                provider_response={"code": e.code},
            )
            return False

        await self.journal.record(
            order_id=order.id,
            type=TransactionType.REFUND,
            amount=refund.amount,
            currency=currency,
            provider=self.provider.provider_name,
            provider_transaction_id=refund.refund_id,
            status=refund.status,
            provider_response=refund.raw,
        )
        return True

    async def _compensate(
        self, order: Order, txn: PaymentTransaction, result: PaymentResult
    ) -> None:
        """Undo a charge whose order moved on while the provider was working."""
        logger.error(
            "Order %s left pending during payment %s; refunding",
            order.id,
            result.transaction_id,
        )
        await self._refund_charge(
            order,
            result.transaction_id,
            result.amount,
            result.currency,
            "Order modified during payment",
        )
        await self.session.commit()
        await self.session.refresh(order)
        raise InvalidStateError(
            "Order was modified while the payment was processing",
            from_status=order.status,
            to_status=OrderStatus.PAID.value,
        )

    async def _expire(self, order: Order, actor: Actor) -> bool:
        moved = await guarded_update(
            self.session,
            order,
            [OrderStatus.PENDING],
            {"status": OrderStatus.CANCELLED, "cancelled_at": self.clock.now()},
            now=self.clock.now(),
        )
        if moved:
            logger.info("Order %s expired", order.id)
            self.emitter.emit(
                OrderCancelled(
                    metadata=self._metadata(order, actor),
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    seller_id=order.seller_id,
                    reason="Order expired",
                )
            )
        return moved

    async def expire_pending_orders(self) -> list[UUID]:
        """Cancel pending orders past their expiry. The caller commits."""
        now = self.clock.now()
        result = await self.session.execute(
            select(Order).where(
                Order.status == OrderStatus.PENDING.value,
                Order.expires_at < now,
            )
        )
        expired = []
        for order in result.scalars().all():
            if await self._expire(order, Actor.system()):
                expired.append(order.id)
        return expired

    # Provider-driven settlement

    async def settle_payment(self, txn: PaymentTransaction) -> Order:
        """A processing or action-pending payment has been secured.

        Moves the order to paid and opens the escrow hold. Repeated
        notifications for the same payment are no-ops.
        """
        order = await self.get_order(txn.order_id, for_update=True)
        if not await self.journal.finalize(txn, TransactionStatus.COMPLETED):
            return order

        system = Actor.system()
        now = self.clock.now()
        if order.status in (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value):
            moved = await guarded_update(
                self.session,
                order,
                [order.status],
                {
                    "status": OrderStatus.PAID,
                    "paid_at": now,
                    "payment_status": TransactionStatus.COMPLETED,
                },
                now=now,
            )
            if not moved:
                raise InvalidStateError("Order was modified concurrently")
            await self._open_payment_hold(order, txn, system)
            self.emitter.emit(
                OrderPaid(
                    metadata=self._metadata(order, system),
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    seller_id=order.seller_id,
                    transaction_id=txn.id,
                    amount=txn.amount,
                    currency=txn.currency,
                )
            )
        elif (
            order.status == OrderStatus.DELIVERED.value
            and not await self.ledger.list_holds(order_id=order.id)
        ):
            # Seller delivered while the payment was still processing.
            await self._open_payment_hold(order, txn, system)
            await guarded_update(
                self.session,
                order,
                [OrderStatus.DELIVERED],
                {"payment_status": TransactionStatus.COMPLETED, "paid_at": now},
                now=now,
            )
        else:
            # Paid through another payment, or cancelled meanwhile.
            logger.warning(
                "Payment %s settled for order %s in status %s; refunding",
                txn.id,
                order.id,
                order.status,
            )
            await self._refund_charge(
                order,
                txn.provider_transaction_id or "",
                txn.amount,
                txn.currency,
                "Order already settled or cancelled",
            )
        return order

    async def fail_payment(self, txn: PaymentTransaction, reason: str) -> Order:
        """A processing or action-pending payment was rejected."""
        order = await self.get_order(txn.order_id, for_update=True)
        if not await self.journal.finalize(
            txn, TransactionStatus.FAILED, failure_reason=reason
        ):
            return order

        system = Actor.system()
        now = self.clock.now()
        if order.status == OrderStatus.PROCESSING.value:
            moved = await guarded_update(
                self.session,
                order,
                [OrderStatus.PROCESSING],
                {
                    "status": OrderStatus.CANCELLED,
                    "cancelled_at": now,
                    "payment_status": TransactionStatus.FAILED,
                },
                now=now,
            )
            if moved:
                self.emitter.emit(
                    OrderCancelled(
                        metadata=self._metadata(order, system),
                        order_id=order.id,
                        buyer_id=order.buyer_id,
                        seller_id=order.seller_id,
                        reason=f"Payment failed: {reason}",
                    )
                )
        elif order.status == OrderStatus.PENDING.value:
            await guarded_update(
                self.session,
                order,
                [OrderStatus.PENDING],
                {"payment_status": TransactionStatus.FAILED},
                now=now,
            )

        self.emitter.emit(
            PaymentFailed(
                metadata=self._metadata(order, system),
                order_id=order.id,
                transaction_id=txn.id,
                error_code="PAYMENT_FAILED",
                message=reason,
            )
        )
        return order

    async def refresh_payment_status(self, order_id: UUID, actor: Actor) -> Order:
        """Poll the provider for an unsettled payment and apply the outcome."""
        order = await self.get_order_for(order_id, actor)
        txn = await self.journal.latest_payment(
            order.id,
            [TransactionStatus.PENDING, TransactionStatus.PROCESSING],
        )
        if txn is None or txn.processed_at is not None or not txn.provider_transaction_id:
            return order

        status = await self.provider.get_transaction_status(txn.provider_transaction_id)
        if status in SECURED_STATUSES:
            return await self.settle_payment(txn)
        if status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            return await self.fail_payment(txn, f"Provider reported {status.value}")
        return order

    async def _held_escrow(self, order: Order, action: str) -> EscrowHold:
        """The order's held hold, for actions that need the funds still in escrow.

        Once part of the hold has been released the remainder can only go
        back to the buyer through an administrative refund.
        """
        hold = await self.ledger.active_hold_for_order(order.id)
        if hold is None or hold.status != EscrowStatus.HELD.value:
            raise InvalidStateError(
                f"Order cannot be {action}: its funds are no longer held in escrow",
                from_status=order.status,
            )
        return hold

    # Party actions

    async def cancel_order(
        self, order_id: UUID, actor: Actor, reason: str | None = None
    ) -> Order:
        """Cancel a pending order (either party) or a paid order (buyer only).

        Cancelling a paid order refunds its escrow hold.
        """
        order = await self.get_order(order_id, for_update=True)
        if not order.is_party(actor.user_id):
            raise AuthorizationError("Access denied")
        if order.status not in {s.value for s in OrderStateMachine.CANCELLABLE}:
            raise InvalidStateError(
                "Order cannot be cancelled in current status",
                from_status=order.status,
                to_status=OrderStatus.CANCELLED.value,
            )
        if order.status == OrderStatus.PAID.value and actor.user_id != order.buyer_id:
            raise AuthorizationError("Only the buyer can cancel a paid order")

        previous = order.status
        hold = None
        if previous == OrderStatus.PAID.value:
            hold = await self._held_escrow(order, "cancelled")

        now = self.clock.now()
        moved = await guarded_update(
            self.session,
            order,
            [previous],
            {"status": OrderStatus.CANCELLED, "cancelled_at": now},
            now=now,
        )
        if not moved:
            raise InvalidStateError("Order was modified concurrently")

        reason = reason or (
            "Cancelled by buyer" if actor.user_id == order.buyer_id else "Cancelled by seller"
        )
        if hold is not None:
            try:
                await self.ledger.refund(
                    hold.id,
                    reason=reason,
                    refunded_by=actor.label,
                    cascade_order=False,
                )
            except PaymentError:
                await guarded_update(
                    self.session,
                    order,
                    [OrderStatus.CANCELLED],
                    {"status": OrderStatus.PAID, "cancelled_at": None},
                    now=now,
                )
                raise
            await guarded_update(
                self.session,
                order,
                [OrderStatus.CANCELLED],
                {"payment_status": "refunded"},
                now=now,
            )

        logger.info("Order %s cancelled by %s", order.id, actor.label)
        self.emitter.emit(
            OrderCancelled(
                metadata=self._metadata(order, actor),
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                reason=reason,
            )
        )
        return order

    async def mark_delivered(
        self,
        order_id: UUID,
        actor: Actor,
        delivery_proof: list[Any] | None = None,
    ) -> Order:
        """Seller marks a paid (or processing) order as delivered."""
        order = await self.get_order(order_id, for_update=True)
        if actor.user_id != order.seller_id:
            raise AuthorizationError("Only the seller can mark an order as delivered")
        if order.status not in {s.value for s in OrderStateMachine.DELIVERABLE}:
            raise InvalidStateError(
                "Order cannot be delivered in current status",
                from_status=order.status,
                to_status=OrderStatus.DELIVERED.value,
            )

        now = self.clock.now()
        proof = list(order.delivery_proof or []) + list(delivery_proof or [])
        moved = await guarded_update(
            self.session,
            order,
            [order.status],
            {
                "status": OrderStatus.DELIVERED,
                "delivered_at": now,
                "delivery_status": DeliveryStatus.DELIVERED,
                "delivery_proof": proof,
            },
            now=now,
        )
        if not moved:
            raise InvalidStateError("Order was modified concurrently")

        self.emitter.emit(
            OrderDelivered(
                metadata=self._metadata(order, actor),
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                delivered_at=now,
            )
        )
        return order

    async def update_order(
        self, order_id: UUID, actor: Actor, changes: OrderUpdate
    ) -> UpdateResult:
        """Apply a party's partial update.

        Status may change to cancelled or delivered under the usual rules.
        Notes belong to one party each; a field written by the other party
        is dropped from the update (or rejected when strict field
        permissions are configured).
        """
        order = await self.get_order(order_id)
        if not order.is_party(actor.user_id):
            raise AuthorizationError("Access denied")

        role = "buyer" if actor.user_id == order.buyer_id else "seller"
        applied: dict[str, Any] = {}
        dropped: list[str] = []
        for name, owner in FIELD_OWNERS.items():
            value = getattr(changes, name)
            if value is None:
                continue
            if owner == role:
                applied[name] = value
            else:
                dropped.append(name)

        extra_proof = None
        if changes.delivery_proof and changes.status != OrderStatus.DELIVERED.value:
            if role == "seller":
                extra_proof = changes.delivery_proof
            else:
                dropped.append("delivery_proof")

        if dropped and self.config.strict_field_permissions:
            raise AuthorizationError(
                f"Not allowed to update: {', '.join(dropped)}",
                details={"fields": dropped},
            )
        if dropped:
            logger.info(
                "Dropped fields %s from %s update of order %s", dropped, role, order.id
            )

        if changes.status == OrderStatus.CANCELLED.value:
            order = await self.cancel_order(order_id, actor, changes.reason)
        elif changes.status == OrderStatus.DELIVERED.value:
            order = await self.mark_delivered(order_id, actor, changes.delivery_proof)
        elif changes.status is not None:
            raise ValidationError(f"Unsupported status change: {changes.status}")

        if applied or extra_proof:
            for name, value in applied.items():
                setattr(order, name, value)
            if extra_proof:
                order.delivery_proof = list(order.delivery_proof or []) + list(extra_proof)
            order.updated_at = self.clock.now()
            await self.session.flush()

        return UpdateResult(order=order, dropped_fields=tuple(dropped))

    async def confirm_delivery(self, order_id: UUID, actor: Actor) -> Order:
        """Buyer confirms receipt; the escrow is released and the order completes."""
        order = await self.get_order(order_id, for_update=True)
        if actor.user_id != order.buyer_id:
            raise AuthorizationError("Only the buyer can confirm delivery")
        if order.status != OrderStatus.DELIVERED.value:
            raise InvalidStateError(
                "Order must be delivered before confirming",
                from_status=order.status,
                to_status=OrderStatus.COMPLETED.value,
            )

        hold = await self.ledger.active_hold_for_order(order.id)
        if hold is None or hold.status != EscrowStatus.HELD.value:
            raise NotFoundError("No active escrow hold for this order")

        await self.ledger.release(
            hold.id, reason="Buyer confirmed delivery", released_by=actor.label
        )
        return order

    async def dispute_order(
        self,
        order_id: UUID,
        actor: Actor,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> Order:
        """Either party raises a dispute; the escrow hold is frozen."""
        order = await self.get_order(order_id, for_update=True)
        if not (actor.is_admin or order.is_party(actor.user_id)):
            raise AuthorizationError("Access denied")
        if not reason or not reason.strip():
            raise ValidationError("Dispute reason is required")
        if order.status not in {s.value for s in OrderStateMachine.DISPUTABLE}:
            raise InvalidStateError(
                "Order cannot be disputed in current status",
                from_status=order.status,
                to_status=OrderStatus.DISPUTED.value,
            )

        hold = await self._held_escrow(order, "disputed")
        await self.ledger.dispute(
            hold.id, reason=reason, disputed_by=actor.label, details=details
        )
        return order

    # Administrative actions

    async def refund_order(self, order_id: UUID, actor: Actor, reason: str) -> Order:
        """Return the buyer's money.

        Funds still in escrow are refunded through the ledger. After a
        partial release the unreleased remainder of the hold is refunded;
        for a completed order the captured amount is.
        """
        if not actor.is_admin:
            raise AuthorizationError("Only administrators can issue refunds")
        order = await self.get_order(order_id, for_update=True)

        hold = await self.ledger.active_hold_for_order(order.id)
        if hold is not None:
            await self.ledger.refund(hold.id, reason=reason, refunded_by=actor.label)
            return order

        OrderStateMachine.validate_transition(order.status, OrderStatus.REFUNDED)
        payment = await self.journal.latest_payment(order.id, SECURED_STATUSES)
        if payment is None or not payment.provider_transaction_id:
            raise InvalidStateError("Order has no settled payment to refund")
        amount, hold_id = await self._refundable_remainder(order)
        if amount <= 0:
            raise InvalidAmountError("Nothing left to refund")

        now = self.clock.now()
        previous = {"status": order.status, "payment_status": order.payment_status}
        moved = await guarded_update(
            self.session,
            order,
            [order.status],
            {"status": OrderStatus.REFUNDED, "payment_status": "refunded"},
            now=now,
        )
        if not moved:
            raise InvalidStateError("Order was modified concurrently")

        try:
            result = await self.provider.refund_payment(
                payment.provider_transaction_id, amount, reason
            )
        except PaymentError as e:
            await guarded_update(
                self.session, order, [OrderStatus.REFUNDED], previous, now=now
            )
            await self.journal.record(
                order_id=order.id,
                type=TransactionType.REFUND,
                amount=amount,
                currency=order.currency,
                provider=self.provider.provider_name,
                provider_transaction_id=payment.provider_transaction_id,
                status=TransactionStatus.FAILED,
                escrow_hold_id=hold_id,
                failure_reason=e.message,
                provider_response={"code": e.code},
            )
            raise

        await self.journal.record(
            order_id=order.id,
            type=TransactionType.REFUND,
            amount=amount,
            currency=order.currency,
            provider=self.provider.provider_name,
            provider_transaction_id=result.refund_id,
            status=result.status,
            escrow_hold_id=hold_id,
            provider_response=result.raw,
        )
        logger.info("Order %s refunded %s by %s", order.id, amount, actor.label)
        self.emitter.emit(
            OrderRefunded(
                metadata=self._metadata(order, actor),
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                amount=amount,
                reason=reason,
            )
        )
        return order

    async def _refundable_remainder(self, order: Order) -> tuple[Decimal, UUID | None]:
        """Amount an admin refund returns when nothing is left in an active hold."""
        if order.status == OrderStatus.COMPLETED.value:
            captured = await self.journal.total(
                types=[TransactionType.CAPTURE],
                order_id=order.id,
                statuses=[TransactionStatus.COMPLETED],
            )
            refunded = await self.journal.total(types=[TransactionType.REFUND], order_id=order.id)
            return captured - refunded, None

        holds = await self.ledger.list_holds(order_id=order.id)
        if not holds or holds[0].status != EscrowStatus.PARTIAL_RELEASE.value:
            raise InvalidStateError(
                "Order has no refundable funds",
                from_status=order.status,
                to_status=OrderStatus.REFUNDED.value,
            )
        hold = holds[0]
        refunded = await self.journal.total(
            types=[TransactionType.REFUND], escrow_hold_id=hold.id
        )
        return hold.amount - hold.released_amount - refunded, hold.id

    async def resolve_dispute(
        self, order_id: UUID, actor: Actor, *, outcome: str, notes: str
    ) -> Order:
        """Admin settles a dispute: `release` pays the seller, `refund` the buyer."""
        if not actor.is_admin:
            raise AuthorizationError("Only administrators can resolve disputes")
        order = await self.get_order(order_id, for_update=True)
        if order.status != OrderStatus.DISPUTED.value:
            raise InvalidStateError(
                "Order is not disputed",
                from_status=order.status,
            )

        hold = await self.ledger.active_hold_for_order(order.id)
        if hold is None:
            raise NotFoundError("No escrow hold for this order")

        await self.ledger.resolve_dispute(
            hold.id, outcome=outcome, reason=notes, resolved_by=actor.label
        )
        order.resolution_notes = notes
        order.updated_at = self.clock.now()
        await self.session.flush()
        return order
