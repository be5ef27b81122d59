"""Database connection, session management and guarded status writes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from marketplace_escrow.config import get_settings
from marketplace_escrow.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """Create async database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = make_session_factory(_engine)
    assert _session_factory is not None
    return _engine, _session_factory


async def dispose_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


async def guarded_update(
    session: AsyncSession,
    instance: Any,
    expected_statuses: Iterable[str],
    values: dict[str, Any],
    *,
    now: datetime,
) -> bool:
    """Conditionally write `values` to a row whose status is still expected.

    Issues UPDATE ... WHERE id = :id AND status IN (:expected). Returns True
    and refreshes `instance` when exactly one row changed; returns False when
    another writer moved the row first.
    """
    await session.flush()

    model = type(instance)
    expected = [_plain(s) for s in expected_statuses]
    params = {key: _plain(value) for key, value in values.items()}
    params["updated_at"] = now

    result = await session.execute(
        update(model)
        .where(model.id == instance.id, model.status.in_(expected))
        .values(**params),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount != 1:
        return False

    await session.refresh(instance)
    return True
