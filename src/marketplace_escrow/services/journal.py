"""Transaction journal - append-only record of provider interactions.

Every payment, capture and refund attempt gets one row, successful or not.
Rows are never updated except to stamp processed_at (and the final status)
once, when the interaction reaches a terminal status. The journal is the
source of truth for audit and for refusing captures or refunds beyond what
was held.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.clock import Clock
from marketplace_escrow.errors import NotFoundError, ValidationError
from marketplace_escrow.models import Order, PaymentTransaction
from marketplace_escrow.providers.base import TERMINAL_STATUSES, TransactionStatus
from marketplace_escrow.services.state_machine import status_value


class TransactionType(str, Enum):
    PAYMENT = "payment"
    CAPTURE = "capture"
    REFUND = "refund"


# Attempts that count against a hold: anything not known to have failed
OUTSTANDING_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.AUTHORIZED,
    TransactionStatus.COMPLETED,
)


@dataclass(frozen=True)
class TransactionContext:
    """Request metadata stored with an attempt."""

    ip_address: str | None = None
    user_agent: str | None = None


class TransactionJournal:
    """Append-only journal of PaymentTransaction rows."""

    def __init__(self, session: AsyncSession, clock: Clock):
        self.session = session
        self.clock = clock

    async def record(
        self,
        *,
        order_id: UUID,
        type: TransactionType,
        amount: Decimal,
        currency: str,
        provider: str,
        provider_transaction_id: str | None,
        status: TransactionStatus,
        context: TransactionContext | None = None,
        payment_method_id: UUID | None = None,
        escrow_hold_id: UUID | None = None,
        provider_response: dict[str, Any] | None = None,
        failure_reason: str | None = None,
        risk_score: int | None = None,
    ) -> PaymentTransaction:
        """Append one attempt. Terminal attempts are stamped processed immediately."""
        if amount < 0:
            raise ValidationError("Transaction amount cannot be negative")
        if await self.session.get(Order, order_id) is None:
            raise NotFoundError(f"Order {order_id} not found")

        context = context or TransactionContext()
        now = self.clock.now()
        txn = PaymentTransaction(
            id=uuid4(),
            order_id=order_id,
            payment_method_id=payment_method_id,
            escrow_hold_id=escrow_hold_id,
            transaction_id=f"{status_value(type)}_{uuid4().hex}",
            provider_transaction_id=provider_transaction_id,
            type=status_value(type),
            amount=amount,
            currency=currency,
            provider=provider,
            status=status_value(status),
            provider_response=provider_response,
            failure_reason=failure_reason,
            risk_score=risk_score,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            processed_at=now if status in TERMINAL_STATUSES else None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(txn)
        await self.session.flush()
        return txn

    async def finalize(
        self,
        txn: PaymentTransaction,
        status: TransactionStatus,
        provider_response: dict[str, Any] | None = None,
        *,
        failure_reason: str | None = None,
    ) -> bool:
        """Stamp a still-open attempt with its terminal status.

        Returns False if the attempt was already processed (the row is left
        untouched).
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status_value(status)} is not a terminal status")

        await self.session.flush()
        now = self.clock.now()
        values: dict[str, Any] = {
            "status": status_value(status),
            "processed_at": now,
            "updated_at": now,
        }
        if provider_response is not None:
            values["provider_response"] = provider_response
        if failure_reason is not None:
            values["failure_reason"] = failure_reason

        result = await self.session.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == txn.id,
                PaymentTransaction.processed_at.is_(None),
            )
            .values(**values),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            return False
        await self.session.refresh(txn)
        return True

    async def get(self, txn_id: UUID) -> PaymentTransaction:
        txn = await self.session.get(PaymentTransaction, txn_id)
        if txn is None:
            raise NotFoundError(f"Transaction {txn_id} not found")
        return txn

    async def find_by_provider_id(
        self, provider: str, provider_transaction_id: str
    ) -> PaymentTransaction | None:
        """Most recent payment attempt for a provider-side transaction id."""
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.provider == provider,
                PaymentTransaction.provider_transaction_id == provider_transaction_id,
                PaymentTransaction.type == TransactionType.PAYMENT.value,
            )
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_order(
        self, order_id: UUID, type: TransactionType | None = None
    ) -> list[PaymentTransaction]:
        stmt = select(PaymentTransaction).where(PaymentTransaction.order_id == order_id)
        if type is not None:
            stmt = stmt.where(PaymentTransaction.type == type.value)
        result = await self.session.execute(stmt.order_by(PaymentTransaction.created_at))
        return list(result.scalars().all())

    async def latest_payment(
        self, order_id: UUID, statuses: Iterable[TransactionStatus] | None = None
    ) -> PaymentTransaction | None:
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.type == TransactionType.PAYMENT.value,
        )
        if statuses is not None:
            stmt = stmt.where(
                PaymentTransaction.status.in_([status_value(s) for s in statuses])
            )
        result = await self.session.execute(
            stmt.order_by(PaymentTransaction.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def total(
        self,
        *,
        types: Iterable[TransactionType],
        order_id: UUID | None = None,
        escrow_hold_id: UUID | None = None,
        statuses: Iterable[TransactionStatus] = OUTSTANDING_STATUSES,
    ) -> Decimal:
        """Sum of amounts for matching attempts."""
        if order_id is None and escrow_hold_id is None:
            raise ValueError("order_id or escrow_hold_id is required")

        stmt = select(func.coalesce(func.sum(PaymentTransaction.amount), 0)).where(
            PaymentTransaction.type.in_([t.value for t in types]),
            PaymentTransaction.status.in_([status_value(s) for s in statuses]),
        )
        if order_id is not None:
            stmt = stmt.where(PaymentTransaction.order_id == order_id)
        if escrow_hold_id is not None:
            stmt = stmt.where(PaymentTransaction.escrow_hold_id == escrow_hold_id)

        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one()))
