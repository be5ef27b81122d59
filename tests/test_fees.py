"""Tests for marketplace fee calculation."""

from decimal import Decimal

import pytest

from marketplace_escrow.errors import InvalidAmountError
from marketplace_escrow.services import FeeCalculator, FeeConfig


class TestFeeCalculator:
    """Percentage fees with a per-fee minimum."""

    def test_standard_split(self):
        """Fees come out of the seller's share; the buyer pays the subtotal."""
        fees = FeeCalculator().calculate(Decimal("100.00"))

        assert fees.platform_fee == Decimal("5.00")
        assert fees.processing_fee == Decimal("2.90")
        assert fees.total_amount == Decimal("100.00")
        assert fees.seller_amount == Decimal("92.10")

    def test_minimum_fee_applies(self):
        fees = FeeCalculator().calculate(Decimal("2.00"))

        assert fees.platform_fee == Decimal("0.30")
        assert fees.processing_fee == Decimal("0.30")
        assert fees.seller_amount == Decimal("1.40")

    def test_rounds_half_up(self):
        """5% of 10.10 is 0.505, which rounds up to 0.51."""
        fees = FeeCalculator().calculate(Decimal("10.10"))

        assert fees.platform_fee == Decimal("0.51")
        assert fees.seller_amount == Decimal("9.29")

    def test_seller_amount_never_exceeds_total(self):
        calculator = FeeCalculator()
        for amount in ("1.00", "9.99", "123.45", "9999.99"):
            fees = calculator.calculate(Decimal(amount))
            assert Decimal("0") <= fees.seller_amount <= fees.total_amount

    def test_fees_larger_than_amount(self):
        calculator = FeeCalculator(FeeConfig(minimum_fee=Decimal("1.00")))

        with pytest.raises(InvalidAmountError):
            calculator.calculate(Decimal("1.50"))

    def test_configured_percentages(self):
        calculator = FeeCalculator(FeeConfig(platform_fee_percent=Decimal("1")))

        assert calculator.calculate(Decimal("100.00")).platform_fee == Decimal("1.00")


class TestTransactionLimits:
    def test_below_minimum(self):
        with pytest.raises(InvalidAmountError):
            FeeCalculator().validate_amount(Decimal("0.99"))

    def test_above_maximum(self):
        with pytest.raises(InvalidAmountError):
            FeeCalculator().validate_amount(Decimal("10000.01"))

    def test_limits_inclusive(self):
        calculator = FeeCalculator()
        calculator.validate_amount(Decimal("1.00"))
        calculator.validate_amount(Decimal("10000"))


class TestFeeConfig:
    def test_rejects_percent_out_of_range(self):
        with pytest.raises(ValueError):
            FeeConfig(platform_fee_percent=Decimal("101"))

    def test_rejects_inverted_limits(self):
        with pytest.raises(ValueError):
            FeeConfig(min_transaction_amount=Decimal("50"), max_transaction_amount=Decimal("10"))
