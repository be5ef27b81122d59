"""Payment method endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from marketplace_escrow.api.dependencies import CurrentActor, DbSession, PaymentMethods
from marketplace_escrow.api.schemas import (
    ApiResponse,
    CardCreate,
    ErrorResponse,
    PaymentMethodResponse,
    ValidationResult,
)
from marketplace_escrow.providers.base import CardDetails

router = APIRouter(prefix="/payment-methods", tags=["payment-methods"])

MethodId = Annotated[UUID, Path()]


@router.get(
    "",
    response_model=ApiResponse[list[PaymentMethodResponse]],
    response_model_exclude_none=True,
)
async def list_payment_methods(
    actor: CurrentActor,
    methods: PaymentMethods,
) -> ApiResponse[list[PaymentMethodResponse]]:
    """Active payment methods of the caller, default first."""
    items = await methods.list_methods(actor)
    return ApiResponse(data=[PaymentMethodResponse.model_validate(m) for m in items])


@router.post(
    "",
    response_model=ApiResponse[PaymentMethodResponse],
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def register_card(
    db: DbSession,
    actor: CurrentActor,
    methods: PaymentMethods,
    payload: CardCreate,
) -> ApiResponse[PaymentMethodResponse]:
    """Tokenize a card with the provider and store it masked."""
    method = await methods.register_card(
        actor,
        CardDetails(
            number=payload.number.replace(" ", ""),
            expiry_month=payload.expiry_month,
            expiry_year=payload.expiry_year,
            cvc=payload.cvc,
            holder_name=payload.holder_name,
        ),
        billing_address=payload.billing_address,
        make_default=payload.make_default,
    )
    await db.commit()
    return ApiResponse(
        data=PaymentMethodResponse.model_validate(method), message="Payment method added"
    )


@router.post(
    "/{method_id}/validate",
    response_model=ApiResponse[ValidationResult],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def validate_payment_method(
    db: DbSession,
    actor: CurrentActor,
    methods: PaymentMethods,
    method_id: MethodId,
) -> ApiResponse[ValidationResult]:
    """Check with the provider that a stored method can be charged."""
    valid = await methods.validate(method_id, actor)
    await db.commit()
    return ApiResponse(data=ValidationResult(valid=valid))


@router.post(
    "/{method_id}/default",
    response_model=ApiResponse[PaymentMethodResponse],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def set_default_payment_method(
    db: DbSession,
    actor: CurrentActor,
    methods: PaymentMethods,
    method_id: MethodId,
) -> ApiResponse[PaymentMethodResponse]:
    method = await methods.set_default(method_id, actor)
    await db.commit()
    return ApiResponse(data=PaymentMethodResponse.model_validate(method))


@router.delete(
    "/{method_id}",
    response_model=ApiResponse[PaymentMethodResponse],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def delete_payment_method(
    db: DbSession,
    actor: CurrentActor,
    methods: PaymentMethods,
    method_id: MethodId,
) -> ApiResponse[PaymentMethodResponse]:
    """Deactivate a payment method."""
    method = await methods.deactivate(method_id, actor)
    await db.commit()
    return ApiResponse(
        data=PaymentMethodResponse.model_validate(method), message="Payment method removed"
    )
