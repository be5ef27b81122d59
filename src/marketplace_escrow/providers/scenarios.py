"""Scenario catalog and risk scoring for the mock provider.

The catalog is a fixture table, not business logic: tests pick an amount,
a card suffix or an email to get a specific simulated outcome. Scenarios
are scanned in order and the first matching trigger wins; when nothing
matches, the first entry (default success) applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from marketplace_escrow.errors import (
    FraudDetectedError,
    InsufficientFundsError,
    InvalidPaymentMethodError,
    NetworkError,
    PaymentDeclinedError,
    PaymentError,
    PaymentSystemError,
)
from marketplace_escrow.providers.base import PaymentRequest, TransactionStatus

AMOUNT_EPSILON = Decimal("0.01")


@dataclass(frozen=True)
class ScenarioTrigger:
    amount: Decimal | None = None
    last4: str | None = None
    email: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.amount is None and self.last4 is None and self.email is None

    def matches(self, request: PaymentRequest) -> bool:
        if self.amount is not None and abs(request.amount - self.amount) < AMOUNT_EPSILON:
            return True
        if self.last4 is not None and request.payment_method.last4 == self.last4:
            return True
        email = request.metadata.get("email") or request.payment_method.email
        if self.email is not None and email == self.email:
            return True
        return False


@dataclass(frozen=True)
class Scenario:
    """One simulated outcome."""

    name: str
    trigger: ScenarioTrigger
    delay_ms: int
    status: TransactionStatus | None = None
    error_code: str | None = None
    message: str = ""
    requires_action: bool = False

    @property
    def fails(self) -> bool:
        return self.error_code is not None


SCENARIOS: tuple[Scenario, ...] = (
    Scenario(
        name="success_default",
        trigger=ScenarioTrigger(),
        delay_ms=1000,
        status=TransactionStatus.COMPLETED,
        message="Payment processed successfully",
    ),
    Scenario(
        name="success_slow",
        trigger=ScenarioTrigger(amount=Decimal("999.99")),
        delay_ms=5000,
        status=TransactionStatus.COMPLETED,
        message="Payment processed successfully",
    ),
    Scenario(
        name="insufficient_funds",
        trigger=ScenarioTrigger(last4="0002"),
        delay_ms=1500,
        error_code="INSUFFICIENT_FUNDS",
        message="Insufficient funds",
    ),
    Scenario(
        name="card_declined",
        trigger=ScenarioTrigger(last4="0069"),
        delay_ms=2000,
        error_code="CARD_DECLINED",
        message="Your card was declined",
    ),
    # Shares card_declined's trigger, so it never matches; kept for catalog parity.
    Scenario(
        name="expired_card",
        trigger=ScenarioTrigger(last4="0069"),
        delay_ms=1000,
        error_code="EXPIRED_CARD",
        message="Your card has expired",
    ),
    Scenario(
        name="fraud_detected",
        trigger=ScenarioTrigger(amount=Decimal("10000")),
        delay_ms=3000,
        error_code="FRAUD_DETECTED",
        message="Transaction flagged for fraud review",
    ),
    Scenario(
        name="requires_3ds",
        trigger=ScenarioTrigger(last4="3220"),
        delay_ms=1500,
        status=TransactionStatus.PENDING,
        message="Additional authentication required",
        requires_action=True,
    ),
    Scenario(
        name="processing_delay",
        trigger=ScenarioTrigger(amount=Decimal("500.00")),
        delay_ms=2000,
        status=TransactionStatus.PROCESSING,
        message="Payment is being processed",
    ),
    Scenario(
        name="network_error",
        trigger=ScenarioTrigger(last4="0119"),
        delay_ms=5000,
        error_code="NETWORK_ERROR",
        message="Network error, please try again",
    ),
    Scenario(
        name="system_error",
        trigger=ScenarioTrigger(last4="0127"),
        delay_ms=1000,
        error_code="SYSTEM_ERROR",
        message="Payment system temporarily unavailable",
    ),
)


def match_scenario(
    request: PaymentRequest, scenarios: tuple[Scenario, ...] = SCENARIOS
) -> Scenario:
    """Return the first scenario whose trigger matches, else the default."""
    for scenario in scenarios:
        if not scenario.trigger.is_empty and scenario.trigger.matches(request):
            return scenario
    return scenarios[0]


def scenario_error(scenario: Scenario) -> PaymentError:
    """Build the typed error a failing scenario raises."""
    code = scenario.error_code
    if code == "INSUFFICIENT_FUNDS":
        return InsufficientFundsError(scenario.message)
    if code == "CARD_DECLINED":
        return PaymentDeclinedError("Your card was declined")
    if code == "EXPIRED_CARD":
        return InvalidPaymentMethodError("Your card has expired")
    if code == "FRAUD_DETECTED":
        return FraudDetectedError(scenario.message)
    if code == "NETWORK_ERROR":
        return NetworkError(scenario.message)
    if code == "SYSTEM_ERROR":
        return PaymentSystemError(scenario.message)
    return PaymentError(scenario.message, code=code or "PAYMENT_ERROR", http_status=400)


def calculate_risk_score(
    amount: Decimal,
    *,
    recent_transactions: int,
    ip_address: str | None,
    at: datetime,
) -> int:
    """Heuristic 0-100 fraud score used by the mock provider."""
    score = 0

    if amount > 1000:
        score += 20
    if amount > 5000:
        score += 30
    if amount > 10000:
        score += 50

    if recent_transactions > 5:
        score += 25
    if recent_transactions > 10:
        score += 50

    if ip_address and ip_address.startswith("192.168."):
        score -= 10

    if at.hour < 6 or at.hour > 22:
        score += 15

    return max(0, min(100, score))
