"""Base protocol and types for payment providers.

All provider adapters must implement the PaymentProvider protocol. The
order and escrow services use these adapters without knowing which
processor sits behind them, and adapters never persist anything: recording
an interaction is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol


class TransactionStatus(str, Enum):
    """Normalized provider transaction status."""

    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Funds are secured: captured, or authorized and waiting for capture
SECURED_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.AUTHORIZED})

TERMINAL_STATUSES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capabilities supported by a payment provider."""

    manual_capture: bool = True
    partial_capture: bool = True
    refunds: bool = True
    create_payment_method: bool = False
    webhooks: bool = True


@dataclass(frozen=True)
class PaymentMethodRef:
    """What a provider needs to charge a stored payment method.

    Carries the provider token plus masked card data, never a PAN or CVV.
    """

    payment_method_id: str
    type: str = "credit_card"
    provider_token: str | None = None
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    email: str | None = None

    @classmethod
    def from_masked_details(
        cls, payment_method_id: str, type: str, masked: dict[str, Any]
    ) -> PaymentMethodRef:
        return cls(
            payment_method_id=payment_method_id,
            type=type,
            provider_token=masked.get("provider_payment_method_id"),
            last4=masked.get("last4"),
            brand=masked.get("brand"),
            expiry_month=masked.get("expiry_month"),
            expiry_year=masked.get("expiry_year"),
            email=masked.get("email"),
        )


@dataclass(frozen=True)
class PaymentRequest:
    """Charge request handed to a provider."""

    order_id: str
    payment_method: PaymentMethodRef
    amount: Decimal
    currency: str = "USD"
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    """Result of processing a payment."""

    transaction_id: str
    status: TransactionStatus
    amount: Decimal
    currency: str = "USD"
    requires_action: bool = False
    client_secret: str | None = None
    redirect_url: str | None = None
    message: str = ""
    risk_score: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureResult:
    """Result of capturing previously authorized funds."""

    transaction_id: str
    status: TransactionStatus
    amount: Decimal
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request."""

    refund_id: str
    status: TransactionStatus
    amount: Decimal
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CardDetails:
    """Raw card data. Only ever passed straight through to the processor."""

    number: str
    expiry_month: int
    expiry_year: int
    cvc: str
    holder_name: str | None = None

    def __repr__(self) -> str:
        return f"CardDetails(last4={self.number[-4:]!r})"


@dataclass(frozen=True)
class CreatedPaymentMethod:
    payment_method_id: str
    masked_details: dict[str, Any]


@dataclass(frozen=True)
class WebhookEvent:
    """Verified inbound provider event, normalized across providers.

    event_type is one of payment.succeeded, payment.failed,
    payment.processing, refund.succeeded, refund.failed, dispute.created
    (anything else is passed through and ignored by the dispatcher).
    """

    event_id: str
    event_type: str
    provider_transaction_id: str | None
    data: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """Protocol for payment provider adapters."""

    provider_name: str

    def capabilities(self) -> ProviderCapabilities:
        """Return capabilities supported by this provider."""
        ...

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """Charge (or authorize) a payment method.

        Raises a PaymentError subtype on failure: InvalidPaymentMethodError,
        InsufficientFundsError, PaymentDeclinedError, FraudDetectedError,
        NetworkError or a generic PaymentError with its code and status.
        """
        ...

    async def capture_payment(
        self, transaction_id: str, amount: Decimal | None = None
    ) -> CaptureResult:
        """Capture authorized funds. Fails if amount exceeds what is capturable."""
        ...

    async def refund_payment(
        self, transaction_id: str, amount: Decimal | None = None, reason: str = ""
    ) -> RefundResult:
        """Refund a payment. Fails if amount exceeds the original amount."""
        ...

    async def get_transaction_status(self, transaction_id: str) -> TransactionStatus:
        ...

    async def validate_payment_method(self, method: PaymentMethodRef) -> bool:
        ...

    async def create_payment_method(self, card: CardDetails) -> CreatedPaymentMethod:
        """Tokenize a card. Only available where capabilities() says so."""
        ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Verify a signed webhook body and normalize it.

        Raises WebhookSignatureError when the signature does not check out.
        """
        ...
