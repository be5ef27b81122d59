"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow import __version__
from marketplace_escrow.api.routes import (
    escrow_router,
    health_router,
    orders_router,
    payment_methods_router,
    payments_router,
    webhooks_router,
)
from marketplace_escrow.clock import Clock, SystemClock
from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.database import get_engine, make_session_factory
from marketplace_escrow.errors import MarketplaceError
from marketplace_escrow.events import EventEmitter, log_event
from marketplace_escrow.providers import create_provider
from marketplace_escrow.providers.base import PaymentProvider
from marketplace_escrow.services.config import EscrowConfig, FeeConfig, OrderConfig
from marketplace_escrow.services.fees import FeeCalculator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(
        "Starting marketplace escrow (%s, provider=%s)",
        settings.environment,
        app.state.provider.provider_name,
    )
    yield
    if app.state.engine is not None:
        await app.state.engine.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    provider: PaymentProvider | None = None,
    clock: Clock | None = None,
    emitter: EventEmitter | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to what the settings describe; tests pass their
    own provider, clock and session factory.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    emitter = emitter or EventEmitter()
    emitter.on_all(log_event)

    app = FastAPI(
        title="Marketplace Escrow API",
        description="Payment, order and escrow core for a gaming marketplace",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.clock = clock
    app.state.emitter = emitter
    app.state.provider = provider or create_provider(settings, clock=clock)
    app.state.engine = None
    if session_factory is None:
        app.state.engine = get_engine(settings.database_url)
        session_factory = make_session_factory(app.state.engine)
    app.state.session_factory = session_factory
    app.state.order_config = OrderConfig.from_settings(settings)
    app.state.escrow_config = EscrowConfig.from_settings(settings)
    app.state.fee_calculator = FeeCalculator(FeeConfig.from_settings(settings))

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(MarketplaceError)
    async def marketplace_exception_handler(
        request: Request, exc: MarketplaceError
    ) -> JSONResponse:
        """Handle domain errors."""
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, **exc.to_dict()},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle malformed requests."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": "Invalid request data",
                "code": "VALIDATION_ERROR",
                "details": {"errors": jsonable_errors(exc)},
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(orders_router, prefix="/api/v1")
    app.include_router(escrow_router, prefix="/api/v1")
    app.include_router(payment_methods_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
