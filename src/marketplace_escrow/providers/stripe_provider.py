"""Stripe payment provider.

Charges are PaymentIntents created with manual capture, so a successful
payment leaves the funds authorized at Stripe and the escrow release is
what captures them. Amounts cross the wire in minor units (cents).

The Stripe SDK is synchronous; calls run in a worker thread so request
handlers stay non-blocking. All SDK errors are translated into the
PaymentError family before leaving this module.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, NoReturn

import stripe

from marketplace_escrow.errors import (
    FraudDetectedError,
    InsufficientFundsError,
    InvalidPaymentMethodError,
    NetworkError,
    PaymentDeclinedError,
    PaymentError,
    PaymentSystemError,
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

logger = logging.getLogger(__name__)

INTENT_STATUS_MAP: dict[str, TransactionStatus] = {
    "requires_payment_method": TransactionStatus.PENDING,
    "requires_confirmation": TransactionStatus.PENDING,
    "requires_action": TransactionStatus.PENDING,
    "processing": TransactionStatus.PROCESSING,
    "requires_capture": TransactionStatus.AUTHORIZED,
    "succeeded": TransactionStatus.COMPLETED,
    "canceled": TransactionStatus.CANCELLED,
}

REFUND_STATUS_MAP: dict[str, TransactionStatus] = {
    "pending": TransactionStatus.PROCESSING,
    "requires_action": TransactionStatus.PENDING,
    "succeeded": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "canceled": TransactionStatus.CANCELLED,
}

WEBHOOK_EVENT_MAP: dict[str, str] = {
    "payment_intent.succeeded": "payment.succeeded",
    "payment_intent.amount_capturable_updated": "payment.succeeded",
    "payment_intent.payment_failed": "payment.failed",
    "payment_intent.processing": "payment.processing",
    "charge.refunded": "refund.succeeded",
    "charge.refund.updated": "refund.updated",
    "refund.failed": "refund.failed",
    "charge.dispute.created": "dispute.created",
}

_CENTS = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    return int((amount.quantize(_CENTS, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(_CENTS)


class StripePaymentProvider:
    """Card payments through Stripe PaymentIntents."""

    provider_name = "stripe"

    def __init__(
        self,
        api_key: str,
        *,
        webhook_secret: str | None = None,
        return_url: str = "http://localhost:3000",
    ):
        self._api_key = api_key
        self.webhook_secret = webhook_secret
        self.return_url = return_url.rstrip("/")

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            manual_capture=True,
            partial_capture=True,
            refunds=True,
            create_payment_method=True,
            webhooks=True,
        )

    async def _call(
        self, operation: str, func: Callable[..., Any], log_context: dict[str, Any], **kwargs: Any
    ) -> Any:
        """Run one SDK call off the event loop with timing and error translation."""
        log_context = {"operation": operation, **log_context}
        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)
        try:
            result = await asyncio.to_thread(func, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            _raise_translated(e, log_context, (time.time() - start_time) * 1000)
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
        )
        return result

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        token = request.payment_method.provider_token
        if not token:
            raise InvalidPaymentMethodError("Stripe payment method not configured")

        intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            {"order_id": request.order_id, "amount": str(request.amount)},
            amount=to_minor_units(request.amount),
            currency=request.currency.lower(),
            payment_method=token,
            payment_method_types=["card"],
            capture_method="manual",
            confirm=True,
            return_url=f"{self.return_url}/orders/{request.order_id}/payment-complete",
            description=request.description or f"Order {request.order_id}",
            metadata={"order_id": request.order_id, **_string_metadata(request.metadata)},
            idempotency_key=f"payment:{request.order_id}:{request.payment_method.payment_method_id}",
        )

        status = INTENT_STATUS_MAP.get(intent.status, TransactionStatus.PENDING)
        next_action = getattr(intent, "next_action", None)
        redirect_url = None
        if next_action and getattr(next_action, "redirect_to_url", None):
            redirect_url = next_action.redirect_to_url.url

        return PaymentResult(
            transaction_id=intent.id,
            status=status,
            amount=request.amount,
            currency=request.currency,
            requires_action=intent.status == "requires_action",
            client_secret=intent.client_secret,
            redirect_url=redirect_url,
            message=f"PaymentIntent {intent.status}",
            raw=intent.to_dict(),
        )

    async def capture_payment(
        self, transaction_id: str, amount: Decimal | None = None
    ) -> CaptureResult:
        kwargs: dict[str, Any] = {}
        if amount is not None:
            kwargs["amount_to_capture"] = to_minor_units(amount)

        intent = await self._call(
            "capture_payment_intent",
            stripe.PaymentIntent.capture,
            {"payment_intent_id": transaction_id},
            intent=transaction_id,
            **kwargs,
        )
        return CaptureResult(
            transaction_id=intent.id,
            status=INTENT_STATUS_MAP.get(intent.status, TransactionStatus.PENDING),
            amount=from_minor_units(intent.amount_received),
            raw=intent.to_dict(),
        )

    async def refund_payment(
        self, transaction_id: str, amount: Decimal | None = None, reason: str = ""
    ) -> RefundResult:
        """Refund a payment; an uncaptured authorization is cancelled instead."""
        log_context = {"payment_intent_id": transaction_id}
        intent = await self._call(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            log_context,
            id=transaction_id,
        )

        if intent.status == "requires_capture":
            if amount is not None and to_minor_units(amount) > intent.amount_capturable:
                raise PaymentError(
                    "Refund amount cannot exceed original transaction amount",
                    code="INVALID_AMOUNT",
                    http_status=400,
                )
            cancelled = await self._call(
                "cancel_payment_intent",
                stripe.PaymentIntent.cancel,
                log_context,
                intent=transaction_id,
                cancellation_reason="requested_by_customer",
            )
            return RefundResult(
                refund_id=cancelled.id,
                status=TransactionStatus.COMPLETED,
                amount=from_minor_units(intent.amount_capturable)
                if amount is None
                else amount,
                raw=cancelled.to_dict(),
            )

        kwargs: dict[str, Any] = {}
        if amount is not None:
            kwargs["amount"] = to_minor_units(amount)
        refund = await self._call(
            "create_refund",
            stripe.Refund.create,
            log_context,
            payment_intent=transaction_id,
            reason="requested_by_customer",
            metadata={"reason": reason} if reason else {},
            **kwargs,
        )
        return RefundResult(
            refund_id=refund.id,
            status=REFUND_STATUS_MAP.get(refund.status, TransactionStatus.PROCESSING),
            amount=from_minor_units(refund.amount),
            raw=refund.to_dict(),
        )

    async def get_transaction_status(self, transaction_id: str) -> TransactionStatus:
        intent = await self._call(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            {"payment_intent_id": transaction_id},
            id=transaction_id,
        )
        return INTENT_STATUS_MAP.get(intent.status, TransactionStatus.PENDING)

    async def validate_payment_method(self, method: PaymentMethodRef) -> bool:
        if method.type not in ("credit_card", "debit_card"):
            return False
        if not method.last4 or len(method.last4) != 4:
            return False
        if not method.expiry_month or not 1 <= method.expiry_month <= 12:
            return False
        if not method.expiry_year or method.expiry_year < datetime.now(timezone.utc).year:
            return False
        if not method.provider_token:
            return False

        try:
            await self._call(
                "retrieve_payment_method",
                stripe.PaymentMethod.retrieve,
                {"payment_method_id": method.provider_token},
                id=method.provider_token,
            )
        except PaymentError:
            logger.warning(
                "Stripe payment method %s failed validation", method.provider_token
            )
            return False
        return True

    async def create_payment_method(self, card: CardDetails) -> CreatedPaymentMethod:
        billing_details = {"name": card.holder_name} if card.holder_name else {}
        pm = await self._call(
            "create_payment_method",
            stripe.PaymentMethod.create,
            {},
            type="card",
            card={
                "number": card.number,
                "exp_month": card.expiry_month,
                "exp_year": card.expiry_year,
                "cvc": card.cvc,
            },
            billing_details=billing_details,
        )
        return CreatedPaymentMethod(
            payment_method_id=pm.id,
            masked_details={
                "last4": pm.card.last4,
                "brand": pm.card.brand,
                "expiry_month": pm.card.exp_month,
                "expiry_year": pm.card.exp_year,
                "holder_name": card.holder_name,
                "provider_payment_method_id": pm.id,
            },
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Verify a Stripe-Signature header and normalize the event."""
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            ).to_dict()
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            raise WebhookSignatureError("Invalid webhook payload") from e

        obj = event["data"]["object"]
        if obj.get("object") == "payment_intent":
            provider_transaction_id = obj.get("id")
        else:
            provider_transaction_id = obj.get("payment_intent")

        return WebhookEvent(
            event_id=event["id"],
            event_type=WEBHOOK_EVENT_MAP.get(event["type"], event["type"]),
            provider_transaction_id=provider_transaction_id,
            data=dict(obj),
        )


def _string_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _raise_translated(
    error: stripe.StripeError, log_context: dict[str, Any], duration_ms: float
) -> NoReturn:
    """Translate a Stripe SDK exception into the PaymentError family."""
    log_context = {**log_context, "duration_ms": duration_ms}
    message = str(getattr(error, "user_message", None) or error)

    if isinstance(error, stripe.CardError):
        decline_code = getattr(error, "decline_code", None)
        logger.warning(
            "Card error from Stripe",
            extra={**log_context, "decline_code": decline_code},
        )
        if decline_code == "insufficient_funds":
            raise InsufficientFundsError(message) from error
        if decline_code in ("fraudulent", "stolen_card", "lost_card"):
            raise FraudDetectedError() from error
        if error.code in ("expired_card", "incorrect_cvc", "incorrect_number"):
            raise InvalidPaymentMethodError(message) from error
        raise PaymentDeclinedError("Your card was declined") from error

    if isinstance(error, stripe.InvalidRequestError):
        logger.error(
            "Invalid request to Stripe",
            extra={**log_context, "stripe_code": error.code},
        )
        if error.code == "resource_missing":
            raise PaymentError(
                "Transaction not found", code="TRANSACTION_NOT_FOUND", http_status=404
            ) from error
        raise PaymentError(message, code="INVALID_REQUEST", http_status=400) from error

    if isinstance(error, stripe.RateLimitError):
        logger.warning("Rate limited by Stripe", extra=log_context)
        raise NetworkError("Payment provider is busy, please retry") from error

    if isinstance(error, stripe.APIConnectionError):
        logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
        raise NetworkError() from error

    logger.error("Stripe API error", extra=log_context, exc_info=True)
    raise PaymentSystemError() from error
