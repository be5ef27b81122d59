"""Payment processing endpoint."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from marketplace_escrow.api.dependencies import CurrentActor, DbSession, Orders, RequestContext
from marketplace_escrow.api.schemas import (
    ApiResponse,
    ErrorResponse,
    EscrowHoldResponse,
    OrderResponse,
    PaymentResponse,
    ProcessPaymentRequest,
    TransactionResponse,
)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/process",
    response_model=ApiResponse[PaymentResponse],
    responses={
        202: {"model": ApiResponse[PaymentResponse]},
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def process_payment(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    context: RequestContext,
    payload: ProcessPaymentRequest,
) -> JSONResponse:
    """Pay for a pending order.

    200 when the funds are secured and in escrow, 202 while the payment is
    still processing or waiting on customer authentication.
    """
    outcome = await orders.process_payment(
        payload.order_id, actor, payload.payment_method_id, context=context
    )
    await db.commit()

    body = ApiResponse[PaymentResponse](
        data=PaymentResponse(
            order=OrderResponse.model_validate(outcome.order),
            transaction=TransactionResponse.model_validate(outcome.transaction),
            escrow=(
                EscrowHoldResponse.model_validate(outcome.hold) if outcome.hold else None
            ),
            requires_action=outcome.result.requires_action,
            client_secret=outcome.result.client_secret,
            redirect_url=outcome.result.redirect_url,
        ),
        message=outcome.result.message or None,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if outcome.completed else status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json", exclude_none=True),
    )
