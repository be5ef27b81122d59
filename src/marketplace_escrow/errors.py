"""Error taxonomy for the escrow core.

Every error that crosses the core's public boundary is a MarketplaceError
carrying a machine-readable code and the HTTP status the request layer
should answer with. Provider adapters translate SDK exceptions into the
PaymentError family before they leave the adapter.
"""

from __future__ import annotations

from typing import Any


class MarketplaceError(Exception):
    """Base class for all domain errors."""

    code = "ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        http_status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(MarketplaceError):
    """Malformed or out-of-range input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class AuthenticationError(MarketplaceError):
    """Missing or invalid caller identity."""

    code = "UNAUTHORIZED"
    http_status = 401


class AuthorizationError(MarketplaceError):
    """Caller is authenticated but not allowed to perform the operation."""

    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(MarketplaceError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidStateError(MarketplaceError):
    """Operation is not valid for the entity's current status."""

    code = "INVALID_STATE"
    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        from_status: str | None = None,
        to_status: str | None = None,
        **kwargs: Any,
    ):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message, **kwargs)


class OrderExpiredError(MarketplaceError):
    code = "ORDER_EXPIRED"
    http_status = 400


class InvalidAmountError(MarketplaceError):
    code = "INVALID_AMOUNT"
    http_status = 400


class WebhookSignatureError(AuthenticationError):
    code = "INVALID_SIGNATURE"


class InternalError(MarketplaceError):
    """Unexpected failure. The message returned to callers stays generic."""

    code = "INTERNAL_ERROR"
    http_status = 500


class ConfigurationError(MarketplaceError):
    code = "CONFIGURATION_ERROR"
    http_status = 500


# Payment errors


class PaymentError(MarketplaceError):
    """Failure reported by (or while talking to) a payment provider."""

    code = "PAYMENT_ERROR"
    http_status = 400


class InsufficientFundsError(PaymentError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 402

    def __init__(self, message: str = "Insufficient funds", **kwargs: Any):
        super().__init__(message, **kwargs)


class PaymentDeclinedError(PaymentError):
    code = "PAYMENT_DECLINED"
    http_status = 402

    def __init__(self, message: str = "Payment was declined", **kwargs: Any):
        super().__init__(message, **kwargs)


class InvalidPaymentMethodError(PaymentError):
    code = "INVALID_PAYMENT_METHOD"
    http_status = 400

    def __init__(self, message: str = "Invalid payment method", **kwargs: Any):
        super().__init__(message, **kwargs)


class FraudDetectedError(PaymentError):
    code = "FRAUD_DETECTED"
    http_status = 403

    def __init__(
        self, message: str = "Transaction flagged for fraud review", **kwargs: Any
    ):
        super().__init__(message, **kwargs)


class NetworkError(PaymentError):
    code = "NETWORK_ERROR"
    http_status = 503

    def __init__(
        self, message: str = "Payment provider is unreachable", **kwargs: Any
    ):
        super().__init__(message, **kwargs)


class PaymentSystemError(PaymentError):
    code = "SYSTEM_ERROR"
    http_status = 500

    def __init__(self, message: str = "Payment system error", **kwargs: Any):
        super().__init__(message, **kwargs)
