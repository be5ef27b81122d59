"""API routes."""

from marketplace_escrow.api.routes.escrow import router as escrow_router
from marketplace_escrow.api.routes.health import router as health_router
from marketplace_escrow.api.routes.orders import router as orders_router
from marketplace_escrow.api.routes.payment_methods import router as payment_methods_router
from marketplace_escrow.api.routes.payments import router as payments_router
from marketplace_escrow.api.routes.webhooks import router as webhooks_router

__all__ = [
    "escrow_router",
    "health_router",
    "orders_router",
    "payment_methods_router",
    "payments_router",
    "webhooks_router",
]
