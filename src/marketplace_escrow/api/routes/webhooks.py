"""Provider webhook endpoint."""

from typing import Annotated

from fastapi import APIRouter, Header, Path, Request

from marketplace_escrow.api.dependencies import DbSession, Provider, Webhooks
from marketplace_escrow.api.schemas import ApiResponse, ErrorResponse, WebhookAck
from marketplace_escrow.errors import NotFoundError

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/{provider_name}",
    response_model=ApiResponse[WebhookAck],
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def receive_webhook(
    request: Request,
    db: DbSession,
    provider: Provider,
    webhooks: Webhooks,
    provider_name: Annotated[str, Path()],
    stripe_signature: Annotated[str | None, Header()] = None,
    x_webhook_signature: Annotated[str | None, Header()] = None,
) -> ApiResponse[WebhookAck]:
    """Verify the signature over the raw body and apply the event."""
    if provider_name != provider.provider_name:
        raise NotFoundError(f"No webhook endpoint for provider '{provider_name}'")

    payload = await request.body()
    signature = stripe_signature if provider_name == "stripe" else x_webhook_signature
    outcome = await webhooks.handle(payload, signature)
    await db.commit()
    return ApiResponse(
        data=WebhookAck(
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            handled=outcome.handled,
            detail=outcome.detail,
        )
    )
