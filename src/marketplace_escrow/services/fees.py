"""Marketplace fee calculation."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketplace_escrow.errors import InvalidAmountError
from marketplace_escrow.services.config import FeeConfig

CENTS = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    """How a buyer's payment splits between platform, processor and seller."""

    subtotal: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_amount: Decimal
    seller_amount: Decimal
    currency: str = "USD"


class FeeCalculator:
    """Percentage fees with a per-fee minimum."""

    def __init__(self, config: FeeConfig | None = None):
        self.config = config or FeeConfig()

    def validate_amount(self, amount: Decimal) -> None:
        if amount < self.config.min_transaction_amount:
            raise InvalidAmountError(
                f"Minimum transaction amount is {self.config.min_transaction_amount}"
            )
        if amount > self.config.max_transaction_amount:
            raise InvalidAmountError(
                f"Maximum transaction amount is {self.config.max_transaction_amount}"
            )

    def calculate(self, amount: Decimal, currency: str = "USD") -> FeeBreakdown:
        """Split `amount`; the buyer pays the subtotal, fees come out of the seller's share."""
        platform_fee = round_money(
            max(amount * self.config.platform_fee_percent / 100, self.config.minimum_fee)
        )
        processing_fee = round_money(
            max(amount * self.config.processing_fee_percent / 100, self.config.minimum_fee)
        )
        subtotal = round_money(amount)
        seller_amount = subtotal - platform_fee - processing_fee
        if seller_amount < 0:
            raise InvalidAmountError("Amount does not cover marketplace fees")

        return FeeBreakdown(
            subtotal=subtotal,
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            total_amount=subtotal,
            seller_amount=seller_amount,
            currency=currency,
        )
