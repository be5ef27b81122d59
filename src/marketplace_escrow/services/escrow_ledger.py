"""Escrow ledger - funds held between payment and delivery.

Owns EscrowHold rows:
- create_hold: open a hold against a secured payment
- release: capture all (released) or part (partial_release) of a hold
- process_auto_releases: sweep held holds whose auto_release_at has passed
- dispute: freeze a hold (and its order) so the sweep skips it
- refund: return the held amount to the buyer
- resolve_dispute: settle a disputed hold either way

Every hold transition is a status-guarded write made before the provider is
called. If the provider then fails, the hold is written back to its previous
state and the failed attempt is journalled, so a concurrent release or the
sweep can never move the same money twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.clock import Clock
from marketplace_escrow.database import guarded_update
from marketplace_escrow.errors import (
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from marketplace_escrow.events import (
    EscrowDisputed,
    EscrowHoldCreated,
    EscrowRefunded,
    EscrowReleased,
    EscrowReleaseFailed,
    EventEmitter,
    EventMetadata,
    OrderCompleted,
    OrderDisputed,
    OrderRefunded,
)
from marketplace_escrow.models import EscrowHold, Order
from marketplace_escrow.providers.base import (
    SECURED_STATUSES,
    PaymentProvider,
    TransactionStatus,
)
from marketplace_escrow.services.actors import SYSTEM_ACTOR
from marketplace_escrow.services.config import EscrowConfig
from marketplace_escrow.services.journal import TransactionJournal, TransactionType
from marketplace_escrow.services.state_machine import (
    EscrowStateMachine,
    EscrowStatus,
    OrderStateMachine,
    OrderStatus,
    ReleaseCondition,
    status_value,
)

logger = logging.getLogger(__name__)

AUTO_RELEASE_REASON = "Auto-release timeout"

_HOLD_FIELDS = (
    "status",
    "auto_release_at",
    "released_amount",
    "released_at",
    "released_by",
    "release_reason",
)


@dataclass
class SweepResult:
    """Outcome of one auto-release sweep."""

    processed: int = 0
    released: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)


def _snapshot(instance: Any, fields: Iterable[str]) -> dict[str, Any]:
    return {name: getattr(instance, name) for name in fields}


class EscrowLedger:
    """Escrow hold lifecycle on top of a payment provider."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        journal: TransactionJournal,
        *,
        clock: Clock,
        emitter: EventEmitter | None = None,
        config: EscrowConfig | None = None,
    ):
        self.session = session
        self.provider = provider
        self.journal = journal
        self.clock = clock
        self.emitter = emitter or EventEmitter()
        self.config = config or EscrowConfig()

    def _metadata(self, order_id: UUID, actor: str) -> EventMetadata:
        is_system = actor == SYSTEM_ACTOR
        return EventMetadata.create(
            timestamp=self.clock.now(),
            correlation_id=order_id,
            actor_id=None if is_system else actor,
            actor_type="system" if is_system else "user",
        )

    # Queries

    async def get_hold(self, hold_id: UUID) -> EscrowHold:
        hold = await self.session.get(EscrowHold, hold_id)
        if hold is None:
            raise NotFoundError("Escrow hold not found")
        return hold

    async def list_holds(
        self,
        *,
        status: EscrowStatus | None = None,
        order_id: UUID | None = None,
    ) -> list[EscrowHold]:
        stmt = select(EscrowHold)
        if status is not None:
            stmt = stmt.where(EscrowHold.status == status_value(status))
        if order_id is not None:
            stmt = stmt.where(EscrowHold.order_id == order_id)
        result = await self.session.execute(stmt.order_by(EscrowHold.created_at.desc()))
        return list(result.scalars().all())

    async def active_hold_for_order(self, order_id: UUID) -> EscrowHold | None:
        """The order's hold that still has funds in escrow (held or disputed)."""
        result = await self.session.execute(
            select(EscrowHold)
            .where(
                EscrowHold.order_id == order_id,
                EscrowHold.status.in_([s.value for s in EscrowStateMachine.ACTIVE]),
            )
            .order_by(EscrowHold.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_escrow_status(self, order_id: UUID) -> EscrowHold:
        """Most recent hold for an order."""
        result = await self.session.execute(
            select(EscrowHold)
            .where(EscrowHold.order_id == order_id)
            .order_by(EscrowHold.created_at.desc())
            .limit(1)
        )
        hold = result.scalar_one_or_none()
        if hold is None:
            raise NotFoundError("No escrow hold found for this order")
        return hold

    # Commands

    async def create_hold(
        self,
        *,
        order_id: UUID,
        transaction_id: UUID,
        amount: Decimal,
        currency: str = "USD",
        hold_for: timedelta | None = None,
        release_condition: ReleaseCondition = ReleaseCondition.BUYER_CONFIRMATION_OR_TIMEOUT,
        created_by: str = SYSTEM_ACTOR,
    ) -> EscrowHold:
        """Open a hold against a secured payment.

        Without `hold_for`, the hold auto-releases after the standalone
        window (7 days by default).
        """
        if amount <= 0:
            raise InvalidAmountError("Escrow amount must be positive")

        payment = await self.journal.get(transaction_id)
        if payment.order_id != order_id:
            raise ValidationError("Transaction does not belong to this order")
        if payment.type != TransactionType.PAYMENT.value or payment.status not in {
            s.value for s in SECURED_STATUSES
        }:
            raise InvalidStateError("Escrow requires a completed payment")
        if amount > payment.amount:
            raise InvalidAmountError("Escrow amount exceeds the captured amount")

        existing = await self.list_holds(status=EscrowStatus.HELD, order_id=order_id)
        if existing:
            raise InvalidStateError("Order already has an active escrow hold")

        now = self.clock.now()
        window = hold_for or timedelta(days=self.config.standalone_hold_days)
        hold = EscrowHold(
            id=uuid4(),
            order_id=order_id,
            transaction_id=transaction_id,
            amount=amount,
            released_amount=Decimal("0"),
            currency=currency,
            status=EscrowStatus.HELD.value,
            auto_release_at=now + window,
            release_condition=status_value(release_condition),
            created_at=now,
            updated_at=now,
        )
        self.session.add(hold)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise InvalidStateError("Order already has an active escrow hold") from e

        logger.info(
            "Escrow hold %s opened for order %s: %s %s",
            hold.id,
            order_id,
            amount,
            currency,
        )
        self.emitter.emit(
            EscrowHoldCreated(
                metadata=self._metadata(order_id, created_by),
                hold_id=hold.id,
                order_id=order_id,
                amount=amount,
                currency=currency,
                auto_release_at=hold.auto_release_at,
            )
        )
        return hold

    async def release(
        self,
        hold_id: UUID,
        *,
        amount: Decimal | None = None,
        reason: str,
        released_by: str,
    ) -> EscrowHold:
        """Capture all or part of a held hold.

        A full release moves the hold to released and completes the order;
        anything less leaves the hold in partial_release and the order as is.
        """
        hold = await self.get_hold(hold_id)
        if hold.status != EscrowStatus.HELD.value:
            raise InvalidStateError(
                f"Escrow hold is {hold.status}, not held",
                from_status=hold.status,
                to_status=EscrowStatus.RELEASED.value,
            )

        release_amount = hold.amount if amount is None else amount
        if release_amount <= 0:
            raise InvalidAmountError("Release amount must be positive")
        if release_amount > hold.amount:
            raise InvalidAmountError("Release amount cannot exceed held amount")

        await self._check_conservation(hold, release_amount)
        return await self._capture(
            hold,
            release_amount,
            reason=reason,
            released_by=released_by,
            from_status=EscrowStatus.HELD,
        )

    async def process_auto_releases(self) -> SweepResult:
        """Release every held hold whose auto_release_at has passed.

        Each hold is committed (or rolled back) on its own; one hold failing
        is logged and does not stop the others.
        """
        now = self.clock.now()
        rows = await self.session.execute(
            select(EscrowHold.id, EscrowHold.order_id)
            .where(
                EscrowHold.status == EscrowStatus.HELD.value,
                EscrowHold.auto_release_at < now,
            )
            .order_by(EscrowHold.auto_release_at)
        )
        due = list(rows.all())
        result = SweepResult()

        for hold_id, order_id in due:
            result.processed += 1
            try:
                await self.release(
                    hold_id, reason=AUTO_RELEASE_REASON, released_by=SYSTEM_ACTOR
                )
                await self.session.commit()
                result.released.append(hold_id)
            except PaymentError as e:
                logger.exception("Auto-release failed for escrow hold %s", hold_id)
                # The hold was restored and the failed capture journalled; keep both.
                await self.session.commit()
                result.failed[hold_id] = e.message
                self.emitter.emit(
                    EscrowReleaseFailed(
                        metadata=self._metadata(order_id, SYSTEM_ACTOR),
                        hold_id=hold_id,
                        order_id=order_id,
                        error_code=e.code,
                        message=e.message,
                    )
                )
            except Exception as e:
                logger.exception("Auto-release failed for escrow hold %s", hold_id)
                await self.session.rollback()
                result.failed[hold_id] = str(e)

        if due:
            logger.info(
                "Auto-release sweep: %d due, %d released, %d failed",
                result.processed,
                len(result.released),
                len(result.failed),
            )
        return result

    async def dispute(
        self,
        hold_id: UUID,
        *,
        reason: str,
        disputed_by: str,
        details: dict[str, Any] | None = None,
    ) -> EscrowHold:
        """Freeze a held hold and move its order to disputed."""
        hold = await self.get_hold(hold_id)
        EscrowStateMachine.validate_transition(hold.status, EscrowStatus.DISPUTED)

        now = self.clock.now()
        claimed = await guarded_update(
            self.session,
            hold,
            [EscrowStatus.HELD],
            {"status": EscrowStatus.DISPUTED, "auto_release_at": None},
            now=now,
        )
        if not claimed:
            raise InvalidStateError("Escrow hold was modified concurrently")

        order = await self._get_order(hold.order_id)
        moved = await guarded_update(
            self.session,
            order,
            OrderStateMachine.sources_for(OrderStatus.DISPUTED),
            {
                "status": OrderStatus.DISPUTED,
                "dispute_reason": reason,
                "dispute_details": details,
            },
            now=now,
        )
        if not moved:
            raise InvalidStateError(
                f"Order in status '{order.status}' cannot be disputed",
                from_status=order.status,
                to_status=OrderStatus.DISPUTED.value,
            )

        logger.info("Escrow hold %s disputed by %s", hold.id, disputed_by)
        metadata = self._metadata(order.id, disputed_by)
        self.emitter.emit(
            EscrowDisputed(
                metadata=metadata,
                hold_id=hold.id,
                order_id=order.id,
                reason=reason,
                disputed_by=disputed_by,
            )
        )
        self.emitter.emit(
            OrderDisputed(
                metadata=metadata,
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                reason=reason,
            )
        )
        return hold

    async def refund(
        self,
        hold_id: UUID,
        *,
        reason: str,
        refunded_by: str,
        cascade_order: bool = True,
    ) -> EscrowHold:
        """Refund the full held amount to the buyer.

        Valid from held or disputed. With `cascade_order` the order moves to
        refunded; callers that settle the order themselves (cancellation)
        pass False.
        """
        hold = await self.get_hold(hold_id)
        if hold.status not in {s.value for s in EscrowStateMachine.ACTIVE}:
            raise InvalidStateError(
                "Escrow hold can only be refunded while held or disputed",
                from_status=hold.status,
                to_status=EscrowStatus.REFUNDED.value,
            )
        await self._check_conservation(hold, hold.amount)

        now = self.clock.now()
        hold_before = _snapshot(hold, _HOLD_FIELDS)
        claimed = await guarded_update(
            self.session,
            hold,
            EscrowStateMachine.ACTIVE,
            {
                "status": EscrowStatus.REFUNDED,
                "auto_release_at": None,
                "released_at": now,
                "released_by": refunded_by,
                "release_reason": reason,
            },
            now=now,
        )
        if not claimed:
            raise InvalidStateError("Escrow hold was modified concurrently")

        order = await self._get_order(hold.order_id)
        order_before = _snapshot(order, ("status", "payment_status"))
        if cascade_order:
            moved = await guarded_update(
                self.session,
                order,
                OrderStateMachine.sources_for(OrderStatus.REFUNDED),
                {"status": OrderStatus.REFUNDED, "payment_status": "refunded"},
                now=now,
            )
            if not moved:
                raise InvalidStateError(
                    f"Order in status '{order.status}' cannot be refunded",
                    from_status=order.status,
                    to_status=OrderStatus.REFUNDED.value,
                )

        payment = await self.journal.get(hold.transaction_id)
        try:
            result = await self.provider.refund_payment(
                payment.provider_transaction_id or "", hold.amount, reason
            )
        except PaymentError as e:
            await self._restore(hold, EscrowStatus.REFUNDED, hold_before, now)
            if cascade_order:
                await self._restore(order, OrderStatus.REFUNDED, order_before, now)
            await self.journal.record(
                order_id=order.id,
                type=TransactionType.REFUND,
                amount=hold.amount,
                currency=hold.currency,
                provider=self.provider.provider_name,
                provider_transaction_id=payment.provider_transaction_id,
                status=TransactionStatus.FAILED,
                escrow_hold_id=hold.id,
                failure_reason=e.message,
                provider_response={"code": e.code},
            )
            raise

        await self.journal.record(
            order_id=order.id,
            type=TransactionType.REFUND,
            amount=hold.amount,
            currency=hold.currency,
            provider=self.provider.provider_name,
            provider_transaction_id=result.refund_id,
            status=result.status,
            escrow_hold_id=hold.id,
            provider_response=result.raw,
        )

        logger.info("Escrow hold %s refunded by %s: %s", hold.id, refunded_by, reason)
        metadata = self._metadata(order.id, refunded_by)
        self.emitter.emit(
            EscrowRefunded(
                metadata=metadata,
                hold_id=hold.id,
                order_id=order.id,
                amount=hold.amount,
                refunded_by=refunded_by,
                reason=reason,
            )
        )
        if cascade_order:
            self.emitter.emit(
                OrderRefunded(
                    metadata=metadata,
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    seller_id=order.seller_id,
                    amount=hold.amount,
                    reason=reason,
                )
            )
        return hold

    async def resolve_dispute(
        self,
        hold_id: UUID,
        *,
        outcome: str,
        reason: str,
        resolved_by: str,
    ) -> EscrowHold:
        """Settle a disputed hold: `release` pays the seller, `refund` the buyer."""
        hold = await self.get_hold(hold_id)
        if hold.status != EscrowStatus.DISPUTED.value:
            raise InvalidStateError(
                "Only disputed escrow holds can be resolved",
                from_status=hold.status,
            )

        if outcome == "refund":
            return await self.refund(hold_id, reason=reason, refunded_by=resolved_by)
        if outcome != "release":
            raise ValidationError("Resolution outcome must be 'release' or 'refund'")

        await self._check_conservation(hold, hold.amount)
        return await self._capture(
            hold,
            hold.amount,
            reason=reason,
            released_by=resolved_by,
            from_status=EscrowStatus.DISPUTED,
        )

    # Internals

    async def _get_order(self, order_id: UUID) -> Order:
        order = await self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def _check_conservation(self, hold: EscrowHold, amount: Decimal) -> None:
        """Refuse to move more out of a hold than was put in."""
        moved = await self.journal.total(
            types=[TransactionType.CAPTURE, TransactionType.REFUND],
            escrow_hold_id=hold.id,
        )
        if moved + amount > hold.amount:
            raise InvalidAmountError(
                "Amount exceeds what remains in escrow",
                details={"held": str(hold.amount), "already_moved": str(moved)},
            )

    async def _restore(
        self, instance: Any, current: Any, previous: dict[str, Any], now: Any
    ) -> None:
        restored = await guarded_update(self.session, instance, [current], previous, now=now)
        if not restored:
            logger.error(
                "Could not restore %s %s after provider failure",
                type(instance).__name__,
                instance.id,
            )

    async def _capture(
        self,
        hold: EscrowHold,
        amount: Decimal,
        *,
        reason: str,
        released_by: str,
        from_status: EscrowStatus,
    ) -> EscrowHold:
        full = amount == hold.amount
        new_status = EscrowStatus.RELEASED if full else EscrowStatus.PARTIAL_RELEASE
        EscrowStateMachine.validate_transition(hold.status, new_status)

        now = self.clock.now()
        before = _snapshot(hold, _HOLD_FIELDS)
        claimed = await guarded_update(
            self.session,
            hold,
            [from_status],
            {
                "status": new_status,
                "released_amount": amount,
                "auto_release_at": None,
                "released_at": now,
                "released_by": released_by,
                "release_reason": reason,
            },
            now=now,
        )
        if not claimed:
            raise InvalidStateError("Escrow hold was modified concurrently")

        payment = await self.journal.get(hold.transaction_id)
        try:
            result = await self.provider.capture_payment(
                payment.provider_transaction_id or "", amount
            )
        except PaymentError as e:
            await self._restore(hold, new_status, before, now)
            await self.journal.record(
                order_id=hold.order_id,
                type=TransactionType.CAPTURE,
                amount=amount,
                currency=hold.currency,
                provider=self.provider.provider_name,
                provider_transaction_id=payment.provider_transaction_id,
                status=TransactionStatus.FAILED,
                escrow_hold_id=hold.id,
                failure_reason=e.message,
                provider_response={"code": e.code},
            )
            raise

        await self.journal.record(
            order_id=hold.order_id,
            type=TransactionType.CAPTURE,
            amount=amount,
            currency=hold.currency,
            provider=self.provider.provider_name,
            provider_transaction_id=result.transaction_id,
            status=result.status,
            escrow_hold_id=hold.id,
            provider_response=result.raw,
        )

        logger.info(
            "Escrow hold %s %s by %s: %s",
            hold.id,
            new_status.value,
            released_by,
            amount,
        )
        self.emitter.emit(
            EscrowReleased(
                metadata=self._metadata(hold.order_id, released_by),
                hold_id=hold.id,
                order_id=hold.order_id,
                amount=amount,
                partial=not full,
                released_by=released_by,
                reason=reason,
            )
        )

        if full:
            await self._complete_order(hold.order_id, released_by, now)
        return hold

    async def _complete_order(self, order_id: UUID, released_by: str, now: Any) -> None:
        order = await self._get_order(order_id)
        moved = await guarded_update(
            self.session,
            order,
            OrderStateMachine.sources_for(OrderStatus.COMPLETED),
            {
                "status": OrderStatus.COMPLETED,
                "completed_at": now,
                "payment_status": "captured",
            },
            now=now,
        )
        if not moved:
            logger.warning(
                "Escrow for order %s released but order left in status %s",
                order_id,
                order.status,
            )
            return

        self.emitter.emit(
            OrderCompleted(
                metadata=self._metadata(order.id, released_by),
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                completed_at=now,
            )
        )
