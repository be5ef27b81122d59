"""Order API endpoints."""

from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from marketplace_escrow.api.dependencies import AdminActor, CurrentActor, DbSession, Orders
from marketplace_escrow.api.schemas import (
    ApiResponse,
    CancelRequest,
    DisputeRequest,
    ErrorResponse,
    EscrowHoldResponse,
    OrderCreate,
    OrderPatch,
    OrderResponse,
    OrderUpdateResponse,
    Pagination,
    RefundRequest,
    ResolveRequest,
    TransactionResponse,
)
from marketplace_escrow.services.journal import TransactionType
from marketplace_escrow.services.order_service import MAX_PAGE_SIZE, ListingSnapshot, OrderUpdate
from marketplace_escrow.services.state_machine import OrderStatus

router = APIRouter(prefix="/orders", tags=["orders"])

OrderId = Annotated[UUID, Path()]


@router.post(
    "",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_order(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    payload: OrderCreate,
) -> ApiResponse[OrderResponse]:
    """Create a pending order for a listing."""
    order = await orders.create_order(
        actor,
        ListingSnapshot(
            listing_id=payload.listing_id,
            seller_id=payload.seller_id,
            unit_price=payload.unit_price,
            currency=payload.currency.upper(),
            available_quantity=payload.available_quantity,
        ),
        payload.quantity,
        buyer_notes=payload.buyer_notes,
        delivery_instructions=payload.delivery_instructions,
    )
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order), message="Order created")


@router.get(
    "",
    response_model=ApiResponse[list[OrderResponse]],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def list_orders(
    actor: CurrentActor,
    orders: Orders,
    role: Literal["buyer", "seller"] | None = None,
    status_filter: Annotated[OrderStatus | None, Query(alias="status")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 10,
) -> ApiResponse[list[OrderResponse]]:
    """List the caller's orders, newest first. Admins see all orders."""
    result = await orders.list_orders(
        actor,
        role=role,
        status=status_filter.value if status_filter else None,
        page=page,
        limit=limit,
    )
    return ApiResponse(
        data=[OrderResponse.model_validate(o) for o in result.items],
        pagination=Pagination(
            page=result.page,
            limit=result.limit,
            total=result.total,
            total_pages=result.total_pages,
        ),
    )


@router.get(
    "/{order_id}",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_order(
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
) -> ApiResponse[OrderResponse]:
    """Get an order. Visible to its buyer, its seller and admins."""
    order = await orders.get_order_for(order_id, actor)
    return ApiResponse(data=OrderResponse.model_validate(order))


@router.patch(
    "/{order_id}",
    response_model=ApiResponse[OrderUpdateResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def update_order(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
    payload: OrderPatch,
) -> ApiResponse[OrderUpdateResponse]:
    """Change status (cancelled or delivered) and party-owned fields."""
    result = await orders.update_order(
        order_id, actor, OrderUpdate(**payload.model_dump(exclude_unset=True))
    )
    await db.commit()
    return ApiResponse(
        data=OrderUpdateResponse(
            order=OrderResponse.model_validate(result.order),
            dropped_fields=list(result.dropped_fields),
        ),
        message="Order updated",
    )


@router.delete(
    "/{order_id}",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def cancel_order(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
    payload: CancelRequest | None = None,
) -> ApiResponse[OrderResponse]:
    """Cancel an order. Paid orders are refunded."""
    order = await orders.cancel_order(order_id, actor, payload.reason if payload else None)
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order), message="Order cancelled")


@router.post(
    "/{order_id}/confirm",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def confirm_delivery(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
) -> ApiResponse[OrderResponse]:
    """Buyer confirms delivery; escrow is released to the seller."""
    order = await orders.confirm_delivery(order_id, actor)
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order), message="Delivery confirmed")


@router.post(
    "/{order_id}/dispute",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def dispute_order(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
    payload: DisputeRequest,
) -> ApiResponse[OrderResponse]:
    """Open a dispute; the escrow stays frozen until an admin resolves it."""
    order = await orders.dispute_order(order_id, actor, payload.reason, payload.details)
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order), message="Dispute opened")


@router.post(
    "/{order_id}/refund",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def refund_order(
    db: DbSession,
    actor: AdminActor,
    orders: Orders,
    order_id: OrderId,
    payload: RefundRequest,
) -> ApiResponse[OrderResponse]:
    """Refund the buyer (admin only)."""
    order = await orders.refund_order(order_id, actor, payload.reason)
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order), message="Order refunded")


@router.post(
    "/{order_id}/resolve",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def resolve_dispute(
    db: DbSession,
    actor: AdminActor,
    orders: Orders,
    order_id: OrderId,
    payload: ResolveRequest,
) -> ApiResponse[OrderResponse]:
    """Settle a disputed order (admin only)."""
    order = await orders.resolve_dispute(
        order_id, actor, outcome=payload.outcome, notes=payload.notes
    )
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order), message="Dispute resolved")


@router.post(
    "/{order_id}/refresh-payment",
    response_model=ApiResponse[OrderResponse],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def refresh_payment(
    db: DbSession,
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
) -> ApiResponse[OrderResponse]:
    """Poll the provider for a payment that has not settled yet."""
    order = await orders.refresh_payment_status(order_id, actor)
    await db.commit()
    return ApiResponse(data=OrderResponse.model_validate(order))


@router.get(
    "/{order_id}/escrow",
    response_model=ApiResponse[EscrowHoldResponse],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_order_escrow(
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
) -> ApiResponse[EscrowHoldResponse]:
    """Escrow status for an order."""
    hold = await orders.get_escrow_for(order_id, actor)
    return ApiResponse(data=EscrowHoldResponse.model_validate(hold))


@router.get(
    "/{order_id}/transactions",
    response_model=ApiResponse[list[TransactionResponse]],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def list_transactions(
    actor: CurrentActor,
    orders: Orders,
    order_id: OrderId,
    type_filter: Annotated[TransactionType | None, Query(alias="type")] = None,
) -> ApiResponse[list[TransactionResponse]]:
    """Payment, capture and refund attempts recorded for an order."""
    transactions = await orders.list_transactions_for(order_id, actor, type_filter)
    return ApiResponse(data=[TransactionResponse.model_validate(t) for t in transactions])
