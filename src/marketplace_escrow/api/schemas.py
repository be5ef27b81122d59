"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


# ============================================================================
# Envelope
# ============================================================================


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ApiResponse(BaseModel, Generic[T]):
    """Every response body: {success, data?, error?, message?}."""

    success: bool = True
    data: T | None = None
    error: str | None = None
    code: str | None = None
    message: str | None = None
    pagination: Pagination | None = None


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    success: bool = False
    error: str
    code: str
    details: dict[str, Any] | None = None


# ============================================================================
# Order schemas
# ============================================================================


class OrderCreate(BaseModel):
    """Checkout request. Listing data comes from the listing collaborator."""

    listing_id: UUID
    seller_id: UUID
    unit_price: Decimal = Field(gt=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    quantity: int = Field(default=1, ge=1)
    available_quantity: int | None = Field(default=None, ge=0)
    buyer_notes: str | None = Field(default=None, max_length=2000)
    delivery_instructions: str | None = Field(default=None, max_length=2000)


class OrderPatch(BaseModel):
    """Partial order update."""

    status: Literal["cancelled", "delivered"] | None = None
    seller_notes: str | None = Field(default=None, max_length=2000)
    buyer_notes: str | None = Field(default=None, max_length=2000)
    delivery_instructions: str | None = Field(default=None, max_length=2000)
    delivery_proof: list[Any] | None = None
    reason: str | None = Field(default=None, max_length=500)


class OrderResponse(BaseModel):
    """Schema for order response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    listing_id: UUID
    buyer_id: UUID
    seller_id: UUID
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    seller_amount: Decimal
    currency: str
    status: str
    payment_status: str
    delivery_status: str
    expires_at: datetime | None = None
    paid_at: datetime | None = None
    delivered_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    delivery_instructions: str | None = None
    delivery_proof: list[Any] = Field(default_factory=list)
    buyer_notes: str | None = None
    seller_notes: str | None = None
    dispute_reason: str | None = None
    resolution_notes: str | None = None
    created_at: datetime
    updated_at: datetime


class OrderUpdateResponse(BaseModel):
    order: OrderResponse
    dropped_fields: list[str] = Field(default_factory=list)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    details: dict[str, Any] | None = None


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


# ============================================================================
# Payment schemas
# ============================================================================


class ProcessPaymentRequest(BaseModel):
    order_id: UUID
    payment_method_id: UUID


class TransactionResponse(BaseModel):
    """Schema for a journal record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_id: str
    order_id: UUID
    provider_transaction_id: str | None = None
    type: str
    amount: Decimal
    currency: str
    provider: str
    status: str
    risk_score: int | None = None
    failure_reason: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class PaymentResponse(BaseModel):
    order: OrderResponse
    transaction: TransactionResponse
    escrow: "EscrowHoldResponse | None" = None
    requires_action: bool = False
    client_secret: str | None = None
    redirect_url: str | None = None


# ============================================================================
# Escrow schemas
# ============================================================================


class EscrowHoldResponse(BaseModel):
    """Schema for escrow hold response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    transaction_id: UUID
    amount: Decimal
    released_amount: Decimal
    currency: str
    status: str
    auto_release_at: datetime | None = None
    release_condition: str
    released_at: datetime | None = None
    released_by: str | None = None
    release_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class ReleaseRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str = Field(default="Released by administrator", min_length=1, max_length=500)


class ResolveRequest(BaseModel):
    outcome: Literal["release", "refund"]
    notes: str = Field(min_length=1, max_length=2000)


# ============================================================================
# Payment method schemas
# ============================================================================


class CardCreate(BaseModel):
    """Raw card data; forwarded to the provider and never stored."""

    number: str = Field(min_length=12, max_length=19, pattern=r"^[0-9 ]+$")
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int = Field(ge=2000, le=2100)
    cvc: str = Field(min_length=3, max_length=4, pattern=r"^[0-9]+$")
    holder_name: str | None = Field(default=None, max_length=200)
    billing_address: dict[str, Any] | None = None
    make_default: bool = False


class PaymentMethodResponse(BaseModel):
    """Schema for a stored payment method (masked)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    provider: str
    masked_details: dict[str, Any]
    is_default: bool
    is_active: bool
    is_verified: bool
    created_at: datetime


class ValidationResult(BaseModel):
    valid: bool


# ============================================================================
# Webhook / health schemas
# ============================================================================


class WebhookAck(BaseModel):
    event_id: str
    event_type: str
    handled: bool
    detail: str = ""


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str
    provider: str


PaymentResponse.model_rebuild()
