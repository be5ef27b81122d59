"""Payment provider adapters.

The provider is chosen once, from configuration, when the application (or
the sweep runner) starts.
"""

from __future__ import annotations

from marketplace_escrow.clock import Clock
from marketplace_escrow.config import Settings
from marketplace_escrow.errors import ConfigurationError
from marketplace_escrow.providers.base import (
    CaptureResult,
    CardDetails,
    CreatedPaymentMethod,
    PaymentMethodRef,
    PaymentProvider,
    PaymentRequest,
    PaymentResult,
    ProviderCapabilities,
    RefundResult,
    SECURED_STATUSES,
    TERMINAL_STATUSES,
    TransactionStatus,
    WebhookEvent,
)
from marketplace_escrow.providers.mock import MockPaymentProvider, MockPaymentStore
from marketplace_escrow.providers.stripe_provider import StripePaymentProvider


def create_provider(
    settings: Settings,
    *,
    clock: Clock | None = None,
    store: MockPaymentStore | None = None,
) -> PaymentProvider:
    """Build the provider named by PAYMENT_PROVIDER."""
    if settings.payment_provider == "mock":
        return MockPaymentProvider(
            store=store,
            clock=clock,
            webhook_secret=settings.webhook_secret,
            return_url=settings.app_url,
        )

    if settings.payment_provider == "stripe":
        if not settings.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is required for the stripe provider")
        return StripePaymentProvider(
            settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            return_url=settings.app_url,
        )

    raise ConfigurationError(f"Unknown payment provider: {settings.payment_provider}")


__all__ = [
    "CaptureResult",
    "CardDetails",
    "CreatedPaymentMethod",
    "MockPaymentProvider",
    "MockPaymentStore",
    "PaymentMethodRef",
    "PaymentProvider",
    "PaymentRequest",
    "PaymentResult",
    "ProviderCapabilities",
    "RefundResult",
    "SECURED_STATUSES",
    "StripePaymentProvider",
    "TERMINAL_STATUSES",
    "TransactionStatus",
    "WebhookEvent",
    "create_provider",
]
