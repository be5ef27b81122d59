"""Liveness, readiness and health checks."""

from dataclasses import asdict

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from marketplace_escrow.api.dependencies import DbSession, Provider
from marketplace_escrow.api.schemas import HealthResponse

router = APIRouter(tags=["health"])


async def _database_ok(db: DbSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: DbSession, provider: Provider) -> HealthResponse:
    """Database and provider summary. Always 200; a dead database reports degraded."""
    database_ok = await _database_ok(db)
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        timestamp=request.app.state.clock.now(),
        database="healthy" if database_ok else "unhealthy",
        provider=provider.provider_name,
    )


@router.get("/ready")
async def readiness_check(db: DbSession, provider: Provider, response: Response) -> dict:
    """Ready once the database answers; 503 otherwise so traffic is held back."""
    if not await _database_ok(db):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unavailable", "database": "unhealthy"}
    return {
        "status": "ready",
        "provider": provider.provider_name,
        "capabilities": asdict(provider.capabilities()),
    }


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
