"""Payment transaction, escrow hold and payment method models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_escrow.models.base import (
    Base,
    JsonColumn,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)


class PaymentTransaction(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One provider interaction (payment, capture or refund).

    Append-only: once processed_at is set the row is never written again.
    """

    __tablename__ = "payment_transactions"

    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    payment_method_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True
    )
    # Holds reference their capturing payment, so this side stays a plain column.
    escrow_hold_id: Mapped[UUID | None] = mapped_column(nullable=True, index=True)

    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    provider_transaction_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    provider_response: Mapped[dict[str, Any] | None] = mapped_column(
        JsonColumn, nullable=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "type IN ('payment', 'refund', 'capture')",
            name="payment_transactions_type_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'authorized', 'completed', "
            "'failed', 'cancelled')",
            name="payment_transactions_status_check",
        ),
        CheckConstraint("amount >= 0", name="payment_transactions_amount_check"),
    )


class EscrowHold(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Funds held for the seller until a release condition is met."""

    __tablename__ = "escrow_holds"

    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    transaction_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_transactions.id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    released_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="held")

    auto_release_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_condition: Mapped[str] = mapped_column(String(64), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('held', 'released', 'partial_release', 'disputed', 'refunded')",
            name="escrow_holds_status_check",
        ),
        CheckConstraint("amount > 0", name="escrow_holds_amount_check"),
        CheckConstraint(
            "released_amount <= amount", name="escrow_holds_released_amount_check"
        ),
        Index(
            "uq_escrow_holds_one_held_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'held'"),
            sqlite_where=text("status = 'held'"),
        ),
        Index("ix_escrow_holds_status_auto_release_at", "status", "auto_release_at"),
    )


class PaymentMethod(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Tokenized payment instrument. Only masked details are ever stored."""

    __tablename__ = "payment_methods"

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    masked_details: Mapped[dict[str, Any]] = mapped_column(
        JsonColumn, nullable=False, default=dict
    )
    billing_address: Mapped[dict[str, Any] | None] = mapped_column(
        JsonColumn, nullable=True
    )
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "type IN ('credit_card', 'debit_card', 'paypal', 'bank_transfer', 'crypto')",
            name="payment_methods_type_check",
        ),
        Index(
            "uq_payment_methods_one_default_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )
