"""Escrow administration endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from marketplace_escrow.api.dependencies import AdminActor, DbSession, Orders
from marketplace_escrow.api.schemas import (
    ApiResponse,
    ErrorResponse,
    EscrowHoldResponse,
    ReleaseRequest,
    ResolveRequest,
)
from marketplace_escrow.services.state_machine import EscrowStatus

router = APIRouter(prefix="/escrow", tags=["escrow"])

HoldId = Annotated[UUID, Path()]


@router.get(
    "",
    response_model=ApiResponse[list[EscrowHoldResponse]],
    response_model_exclude_none=True,
    responses={403: {"model": ErrorResponse}},
)
async def list_holds(
    actor: AdminActor,
    orders: Orders,
    status_filter: Annotated[EscrowStatus | None, Query(alias="status")] = None,
    order_id: UUID | None = None,
) -> ApiResponse[list[EscrowHoldResponse]]:
    """List escrow holds with optional filters."""
    holds = await orders.ledger.list_holds(status=status_filter, order_id=order_id)
    return ApiResponse(data=[EscrowHoldResponse.model_validate(h) for h in holds])


@router.get(
    "/{hold_id}",
    response_model=ApiResponse[EscrowHoldResponse],
    response_model_exclude_none=True,
    responses={404: {"model": ErrorResponse}},
)
async def get_hold(
    actor: AdminActor,
    orders: Orders,
    hold_id: HoldId,
) -> ApiResponse[EscrowHoldResponse]:
    hold = await orders.ledger.get_hold(hold_id)
    return ApiResponse(data=EscrowHoldResponse.model_validate(hold))


@router.post(
    "/{hold_id}/release",
    response_model=ApiResponse[EscrowHoldResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def release_hold(
    db: DbSession,
    actor: AdminActor,
    orders: Orders,
    hold_id: HoldId,
    payload: ReleaseRequest,
) -> ApiResponse[EscrowHoldResponse]:
    """Release all or part of a held hold to the seller."""
    hold = await orders.ledger.release(
        hold_id, amount=payload.amount, reason=payload.reason, released_by=actor.label
    )
    await db.commit()
    return ApiResponse(data=EscrowHoldResponse.model_validate(hold), message="Escrow released")


@router.post(
    "/{hold_id}/resolve",
    response_model=ApiResponse[EscrowHoldResponse],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def resolve_hold(
    db: DbSession,
    actor: AdminActor,
    orders: Orders,
    hold_id: HoldId,
    payload: ResolveRequest,
) -> ApiResponse[EscrowHoldResponse]:
    """Settle a disputed hold in favour of the seller or the buyer."""
    hold = await orders.ledger.resolve_dispute(
        hold_id, outcome=payload.outcome, reason=payload.notes, resolved_by=actor.label
    )
    await db.commit()
    return ApiResponse(data=EscrowHoldResponse.model_validate(hold), message="Dispute resolved")
