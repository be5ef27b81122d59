"""Mock payment provider for local development and testing.

Outcomes come from the scenario catalog in `scenarios`: choose an amount,
card suffix or email to get a specific result. State lives in an explicit
MockPaymentStore owned by the provider instance, and simulated processing
delays go through the injected clock so tests never really sleep.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from marketplace_escrow.clock import Clock, SystemClock
from marketplace_escrow.errors import (
    InvalidPaymentMethodError,
    PaymentError,
    ValidationError,
    WebhookSignatureError,
)
from marketplace_escrow.providers.base import (
    CaptureResult,
    CardDetails,
    CreatedPaymentMethod,
    PaymentMethodRef,
    PaymentRequest,
    PaymentResult,
    ProviderCapabilities,
    RefundResult,
    TransactionStatus,
    WebhookEvent,
)
from marketplace_escrow.providers.scenarios import (
    SCENARIOS,
    Scenario,
    calculate_risk_score,
    match_scenario,
    scenario_error,
)

logger = logging.getLogger(__name__)

CAPTURE_DELAY_SECONDS = 1.0
REFUND_DELAY_SECONDS = 1.5
VALIDATE_DELAY_SECONDS = 0.5
SETTLEMENT_AFTER = timedelta(seconds=10)

CARD_TYPES = frozenset({"credit_card", "debit_card"})
SUPPORTED_TYPES = CARD_TYPES | {"paypal", "bank_transfer", "crypto"}
REJECTED_LAST4 = frozenset({"0002", "0069", "0119", "0127"})

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


@dataclass
class MockTransaction:
    """Simulated processor-side transaction."""

    transaction_id: str
    order_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    payment_method_id: str
    created_at: datetime
    updated_at: datetime
    captured_amount: Decimal = Decimal("0")
    refunded_amount: Decimal = Decimal("0")
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MockPaymentStore:
    """In-memory processor state for one mock provider instance."""

    transactions: dict[str, MockTransaction] = field(default_factory=dict)
    refunds: dict[str, dict[str, Any]] = field(default_factory=dict)
    payment_methods: dict[str, PaymentMethodRef] = field(default_factory=dict)

    @classmethod
    def with_test_cards(cls) -> MockPaymentStore:
        """Store pre-seeded with the standard test cards."""
        store = cls()
        for ref in (
            PaymentMethodRef("pm_test_visa", provider_token="pm_test_visa",
                             last4="4242", brand="visa", expiry_month=12, expiry_year=2030),
            PaymentMethodRef("pm_test_mastercard", provider_token="pm_test_mastercard",
                             last4="5555", brand="mastercard", expiry_month=6, expiry_year=2031),
            PaymentMethodRef("pm_test_declined", provider_token="pm_test_declined",
                             last4="0002", brand="visa", expiry_month=3, expiry_year=2030),
        ):
            store.payment_methods[ref.payment_method_id] = ref
        return store

    def recent_transaction_count(self, since: datetime) -> int:
        return sum(1 for txn in self.transactions.values() if txn.created_at > since)


class MockPaymentProvider:
    """Deterministic payment simulator.

    Use in development and tests only. Every call sleeps on the clock for
    the scenario's delay before answering.
    """

    provider_name = "mock"

    def __init__(
        self,
        store: MockPaymentStore | None = None,
        clock: Clock | None = None,
        *,
        webhook_secret: str | None = None,
        return_url: str = "http://localhost:3000",
        scenarios: tuple[Scenario, ...] = SCENARIOS,
    ):
        self.store = store if store is not None else MockPaymentStore.with_test_cards()
        self.clock = clock or SystemClock()
        self.webhook_secret = webhook_secret
        self.return_url = return_url.rstrip("/")
        self.scenarios = scenarios

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            manual_capture=True,
            partial_capture=True,
            refunds=True,
            create_payment_method=True,
            webhooks=True,
        )

    def _new_id(self, prefix: str) -> str:
        millis = int(self.clock.now().timestamp() * 1000)
        random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
        return f"{prefix}_mock_{_base36(millis)}_{random_part}"

    def _resolve_method(self, method: PaymentMethodRef) -> PaymentMethodRef:
        if method.type not in SUPPORTED_TYPES:
            raise InvalidPaymentMethodError("Payment method not supported")
        if method.type in CARD_TYPES and method.last4 is None:
            stored = self.store.payment_methods.get(
                method.provider_token or method.payment_method_id
            )
            if stored is None:
                raise InvalidPaymentMethodError("Payment method not found")
            return stored
        return method

    def _get_transaction(self, transaction_id: str) -> MockTransaction:
        txn = self.store.transactions.get(transaction_id)
        if txn is None:
            raise PaymentError(
                "Transaction not found",
                code="TRANSACTION_NOT_FOUND",
                http_status=404,
            )
        return txn

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """Simulate a charge according to the matching scenario."""
        if not request.order_id or request.amount <= 0:
            raise PaymentError(
                "Invalid payment request", code="INVALID_REQUEST", http_status=400
            )

        method = self._resolve_method(request.payment_method)
        if method is not request.payment_method:
            request = PaymentRequest(
                order_id=request.order_id,
                payment_method=method,
                amount=request.amount,
                currency=request.currency,
                description=request.description,
                metadata=request.metadata,
                ip_address=request.ip_address,
            )

        now = self.clock.now()
        risk_score = calculate_risk_score(
            request.amount,
            recent_transactions=self.store.recent_transaction_count(
                now - timedelta(hours=24)
            ),
            ip_address=request.ip_address,
            at=now,
        )
        scenario = match_scenario(request, self.scenarios)

        log_context = {
            "order_id": request.order_id,
            "amount": str(request.amount),
            "scenario": scenario.name,
            "risk_score": risk_score,
        }
        logger.info("Mock payment started", extra=log_context)

        await self.clock.sleep(scenario.delay_ms / 1000)

        if scenario.fails:
            logger.warning(
                "Mock payment failed: %s", scenario.error_code, extra=log_context
            )
            raise scenario_error(scenario)

        assert scenario.status is not None
        transaction_id = self._new_id("txn")
        settled_at = self.clock.now()
        self.store.transactions[transaction_id] = MockTransaction(
            transaction_id=transaction_id,
            order_id=request.order_id,
            amount=request.amount,
            currency=request.currency,
            status=scenario.status,
            payment_method_id=method.payment_method_id,
            created_at=settled_at,
            updated_at=settled_at,
            metadata=dict(request.metadata),
        )

        client_secret = None
        redirect_url = None
        if scenario.requires_action:
            client_secret = f"{transaction_id}_secret_{secrets.token_hex(8)}"
            redirect_url = f"{self.return_url}/payments/3ds?transaction={transaction_id}"

        logger.info(
            "Mock payment %s: %s",
            transaction_id,
            scenario.status.value,
            extra=log_context,
        )
        return PaymentResult(
            transaction_id=transaction_id,
            status=scenario.status,
            amount=request.amount,
            currency=request.currency,
            requires_action=scenario.requires_action,
            client_secret=client_secret,
            redirect_url=redirect_url,
            message=scenario.message,
            risk_score=risk_score,
            raw={"scenario": scenario.name, "transaction_id": transaction_id},
        )

    async def capture_payment(
        self, transaction_id: str, amount: Decimal | None = None
    ) -> CaptureResult:
        """Capture part or all of the remaining authorized amount."""
        await self.clock.sleep(CAPTURE_DELAY_SECONDS)

        txn = self._get_transaction(transaction_id)
        if txn.status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            raise PaymentError(
                f"Cannot capture a {txn.status.value} transaction",
                code="INVALID_STATE",
                http_status=400,
            )

        remaining = txn.amount - txn.captured_amount
        capture_amount = remaining if amount is None else amount
        if capture_amount <= 0 or capture_amount > remaining:
            raise PaymentError(
                "Capture amount exceeds authorized amount",
                code="INVALID_AMOUNT",
                http_status=400,
            )

        txn.captured_amount += capture_amount
        txn.status = TransactionStatus.COMPLETED
        txn.updated_at = self.clock.now()

        return CaptureResult(
            transaction_id=transaction_id,
            status=TransactionStatus.COMPLETED,
            amount=capture_amount,
            raw={"captured_amount": str(txn.captured_amount)},
        )

    async def refund_payment(
        self, transaction_id: str, amount: Decimal | None = None, reason: str = ""
    ) -> RefundResult:
        """Refund part or all of a transaction."""
        await self.clock.sleep(REFUND_DELAY_SECONDS)

        txn = self._get_transaction(transaction_id)
        refundable = txn.amount - txn.refunded_amount
        refund_amount = refundable if amount is None else amount
        if refund_amount <= 0 or refund_amount > refundable:
            raise PaymentError(
                "Refund amount cannot exceed original transaction amount",
                code="INVALID_AMOUNT",
                http_status=400,
            )

        refund_id = self._new_id("ref")
        txn.refunded_amount += refund_amount
        txn.updated_at = self.clock.now()
        self.store.refunds[refund_id] = {
            "refund_id": refund_id,
            "transaction_id": transaction_id,
            "amount": refund_amount,
            "reason": reason,
            "created_at": txn.updated_at,
        }

        return RefundResult(
            refund_id=refund_id,
            status=TransactionStatus.COMPLETED,
            amount=refund_amount,
            raw={"transaction_id": transaction_id, "reason": reason},
        )

    async def get_transaction_status(self, transaction_id: str) -> TransactionStatus:
        """Current status; processing transactions settle after ten seconds."""
        txn = self._get_transaction(transaction_id)
        now = self.clock.now()
        if (
            txn.status == TransactionStatus.PROCESSING
            and now - txn.created_at >= SETTLEMENT_AFTER
        ):
            txn.status = TransactionStatus.COMPLETED
            txn.updated_at = now
        return txn.status

    async def validate_payment_method(self, method: PaymentMethodRef) -> bool:
        await self.clock.sleep(VALIDATE_DELAY_SECONDS)

        if not method.type:
            return False
        if method.type not in CARD_TYPES:
            return method.type in SUPPORTED_TYPES

        if not method.last4 or not method.expiry_month or not method.expiry_year:
            return False

        # Expiry compares against the first day of the expiry month.
        expires = datetime(method.expiry_year, method.expiry_month, 1, tzinfo=timezone.utc)
        if expires < self.clock.now():
            return False

        return method.last4 not in REJECTED_LAST4

    async def create_payment_method(self, card: CardDetails) -> CreatedPaymentMethod:
        """Tokenize a test card into the store."""
        digits = card.number.replace(" ", "")
        if len(digits) < 12 or not digits.isdigit():
            raise InvalidPaymentMethodError("Invalid card number")

        token = f"pm_mock_{uuid4().hex[:16]}"
        ref = PaymentMethodRef(
            payment_method_id=token,
            provider_token=token,
            last4=digits[-4:],
            expiry_month=card.expiry_month,
            expiry_year=card.expiry_year,
        )
        self.store.payment_methods[token] = ref

        return CreatedPaymentMethod(
            payment_method_id=token,
            masked_details={
                "last4": ref.last4,
                "brand": ref.brand,
                "expiry_month": ref.expiry_month,
                "expiry_year": ref.expiry_year,
                "holder_name": card.holder_name,
                "provider_payment_method_id": token,
            },
        )

    def sign_payload(self, payload: bytes) -> str:
        """Signature header value for a payload (test and tooling helper)."""
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        digest = hmac.new(
            self.webhook_secret.encode(), payload, hashlib.sha256
        ).hexdigest()
        return f"sha256={digest}"

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Verify an HMAC-SHA256 signed webhook body."""
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        expected = self.sign_payload(payload)
        provided = signature if signature.startswith("sha256=") else f"sha256={signature}"
        if not hmac.compare_digest(expected, provided):
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")

        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError("Webhook data must be a JSON object")
        return WebhookEvent(
            event_id=str(body.get("id") or uuid4()),
            event_type=str(body.get("type", "")),
            provider_transaction_id=data.get("transaction_id"),
            data=data,
        )

    # Test helpers

    def simulate_status(self, transaction_id: str, status: TransactionStatus) -> None:
        txn = self._get_transaction(transaction_id)
        txn.status = status
        txn.updated_at = self.clock.now()

