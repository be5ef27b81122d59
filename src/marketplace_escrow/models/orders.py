"""Order model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_escrow.models.base import (
    Base,
    JsonColumn,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)


class Order(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One buyer/seller/listing purchase.

    Status changes go through the order state machine only; rows are never
    deleted.
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    listing_id: Mapped[UUID] = mapped_column(nullable=False)
    buyer_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    seller_id: Mapped[UUID] = mapped_column(nullable=False, index=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    processing_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    seller_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )
    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )

    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    delivery_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_proof: Mapped[list[Any]] = mapped_column(
        JsonColumn, nullable=False, default=list
    )
    buyer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    seller_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_details: Mapped[dict[str, Any] | None] = mapped_column(
        JsonColumn, nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'processing', 'delivered', 'completed', "
            "'cancelled', 'disputed', 'refunded')",
            name="orders_status_check",
        ),
        CheckConstraint("seller_amount <= total_amount", name="orders_seller_amount_check"),
        CheckConstraint("total_amount >= 0", name="orders_total_amount_check"),
        CheckConstraint("quantity >= 1", name="orders_quantity_check"),
        Index("ix_orders_status_expires_at", "status", "expires_at"),
    )

    def is_party(self, user_id: UUID) -> bool:
        return user_id in (self.buyer_id, self.seller_id)
