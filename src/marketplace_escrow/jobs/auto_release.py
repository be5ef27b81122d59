"""Escrow auto-release sweep runner.

Periodically releases held escrow whose auto-release time has passed and,
optionally, cancels pending orders past their expiry. The ledger does one
pass per call; the interval loop lives here.

Usage:
    marketplace-escrow-sweep --once
    marketplace-escrow-sweep --interval-minutes 15 --expire-orders
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow.clock import Clock, SystemClock
from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.database import create_schema, dispose_db, init_db
from marketplace_escrow.errors import ConfigurationError
from marketplace_escrow.events import EventEmitter, log_event
from marketplace_escrow.providers import create_provider
from marketplace_escrow.providers.base import PaymentProvider
from marketplace_escrow.services.config import EscrowConfig, OrderConfig
from marketplace_escrow.services.order_service import OrderService

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    processed: int = 0
    released: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)
    expired_orders: list[UUID] = field(default_factory=list)


async def run_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    provider: PaymentProvider,
    settings: Settings,
    clock: Clock,
    *,
    expire_orders: bool = False,
    emitter: EventEmitter | None = None,
) -> SweepSummary:
    """One pass: auto-release due holds, then optionally expire orders."""
    summary = SweepSummary()
    async with session_factory() as session:
        orders = OrderService(
            session,
            provider,
            clock=clock,
            emitter=emitter,
            config=OrderConfig.from_settings(settings),
            escrow_config=EscrowConfig.from_settings(settings),
        )

        result = await orders.ledger.process_auto_releases()
        summary.processed = result.processed
        summary.released = result.released
        summary.failed = result.failed

        if expire_orders:
            summary.expired_orders = await orders.expire_pending_orders()
            await session.commit()

    logger.info(
        "Sweep finished: %d holds due, %d released, %d failed, %d orders expired",
        summary.processed,
        len(summary.released),
        len(summary.failed),
        len(summary.expired_orders),
    )
    return summary


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    clock = SystemClock()
    emitter = EventEmitter()
    emitter.on_all(log_event)

    try:
        provider = create_provider(settings, clock=clock)
    except ConfigurationError as e:
        logger.error("Cannot start sweep: %s", e.message)
        return 2

    engine, session_factory = init_db()
    try:
        if args.create_schema:
            await create_schema(engine)

        interval = args.interval_minutes or settings.sweep_interval_minutes
        while True:
            summary = await run_sweep(
                session_factory,
                provider,
                settings,
                clock,
                expire_orders=args.expire_orders,
                emitter=emitter,
            )
            if args.once:
                return 1 if summary.failed else 0
            await asyncio.sleep(interval * 60)
    finally:
        await dispose_db()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="marketplace-escrow-sweep",
        description="Release escrow holds whose auto-release time has passed.",
    )
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument(
        "--interval-minutes",
        type=int,
        default=None,
        help="Minutes between passes (default: SWEEP_INTERVAL_MINUTES)",
    )
    parser.add_argument(
        "--expire-orders",
        action="store_true",
        help="Also cancel pending orders past their expiry",
    )
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables before the first pass",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Sweep runner stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
