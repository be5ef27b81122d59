"""Domain configuration objects.

Explicit configuration for the escrow core, built once from Settings and
passed to services. Immutable after creation (frozen dataclasses).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from marketplace_escrow.config import Settings


@dataclass(frozen=True)
class EscrowConfig:
    """
    Escrow hold timing.

    Attributes:
        payment_hold_hours: Auto-release delay for holds opened by the
            payment flow. Default 72 hours.
        standalone_hold_days: Auto-release delay for holds created directly
            through the ledger. Default 7 days.
    """

    payment_hold_hours: int = 72
    standalone_hold_days: int = 7

    def __post_init__(self) -> None:
        if self.payment_hold_hours < 1:
            raise ValueError("payment_hold_hours must be at least 1")
        if self.standalone_hold_days < 1:
            raise ValueError("standalone_hold_days must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> EscrowConfig:
        return cls(
            payment_hold_hours=settings.payment_hold_hours,
            standalone_hold_days=settings.escrow_auto_release_days,
        )


@dataclass(frozen=True)
class OrderConfig:
    """
    Order lifecycle configuration.

    Attributes:
        expiry_hours: How long a pending order can be paid. Default 24.
        strict_field_permissions: If True, writing a field that belongs to
            the other party raises AuthorizationError. If False (default),
            such fields are dropped from the update without an error.
    """

    expiry_hours: int = 24
    strict_field_permissions: bool = False

    def __post_init__(self) -> None:
        if self.expiry_hours < 1:
            raise ValueError("expiry_hours must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> OrderConfig:
        return cls(
            expiry_hours=settings.order_expiry_hours,
            strict_field_permissions=settings.strict_field_permissions,
        )


@dataclass(frozen=True)
class FeeConfig:
    """Marketplace fees and per-transaction limits."""

    platform_fee_percent: Decimal = Decimal("5")
    processing_fee_percent: Decimal = Decimal("2.9")
    minimum_fee: Decimal = Decimal("0.30")
    min_transaction_amount: Decimal = Decimal("1.00")
    max_transaction_amount: Decimal = Decimal("10000")

    def __post_init__(self) -> None:
        for name in ("platform_fee_percent", "processing_fee_percent"):
            value = getattr(self, name)
            if not Decimal("0") <= value <= Decimal("100"):
                raise ValueError(f"{name} must be between 0 and 100")
        if self.minimum_fee < 0:
            raise ValueError("minimum_fee cannot be negative")
        if self.min_transaction_amount > self.max_transaction_amount:
            raise ValueError("min_transaction_amount exceeds max_transaction_amount")

    @classmethod
    def from_settings(cls, settings: Settings) -> FeeConfig:
        return cls(
            platform_fee_percent=settings.platform_fee_percent,
            processing_fee_percent=settings.processing_fee_percent,
            minimum_fee=settings.minimum_fee,
            min_transaction_amount=settings.min_transaction_amount,
            max_transaction_amount=settings.max_transaction_amount,
        )
