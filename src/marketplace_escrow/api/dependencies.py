"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.errors import AuthenticationError, AuthorizationError
from marketplace_escrow.providers.base import PaymentProvider
from marketplace_escrow.services.actors import ADMIN_ROLE, Actor
from marketplace_escrow.services.journal import TransactionContext
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.payment_methods import PaymentMethodService
from marketplace_escrow.services.webhooks import WebhookService


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency. Routes commit; anything else rolls back."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_provider(request: Request) -> PaymentProvider:
    return request.app.state.provider


async def get_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Identity supplied by the auth layer in front of this service."""
    if not x_user_id:
        raise AuthenticationError("Authentication required")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise AuthenticationError("Invalid X-User-ID header") from None
    role = ADMIN_ROLE if x_user_role == ADMIN_ROLE else "user"
    return Actor(user_id=user_id, role=role)


async def get_admin(actor: Annotated[Actor, Depends(get_actor)]) -> Actor:
    if not actor.is_admin:
        raise AuthorizationError("Administrator access required")
    return actor


def get_request_context(
    request: Request,
    user_agent: Annotated[str | None, Header()] = None,
) -> TransactionContext:
    return TransactionContext(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
AdminActor = Annotated[Actor, Depends(get_admin)]
Provider = Annotated[PaymentProvider, Depends(get_provider)]
RequestContext = Annotated[TransactionContext, Depends(get_request_context)]


def get_order_service(request: Request, db: DbSession) -> OrderService:
    state = request.app.state
    return OrderService(
        db,
        state.provider,
        clock=state.clock,
        emitter=state.emitter,
        config=state.order_config,
        escrow_config=state.escrow_config,
        fees=state.fee_calculator,
    )


def get_payment_method_service(request: Request, db: DbSession) -> PaymentMethodService:
    return PaymentMethodService(db, request.app.state.provider, clock=request.app.state.clock)


def get_webhook_service(
    orders: Annotated[OrderService, Depends(get_order_service)],
) -> WebhookService:
    return WebhookService(orders)


Orders = Annotated[OrderService, Depends(get_order_service)]
PaymentMethods = Annotated[PaymentMethodService, Depends(get_payment_method_service)]
Webhooks = Annotated[WebhookService, Depends(get_webhook_service)]
