"""Pytest fixtures for marketplace escrow tests."""

from __future__ import annotations

from decimal import Decimal
from typing import AsyncGenerator, Awaitable, Callable
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace_escrow.clock import FrozenClock
from marketplace_escrow.database import create_schema, make_session_factory
from marketplace_escrow.events import DomainEvent, EventEmitter
from marketplace_escrow.models import PaymentMethod
from marketplace_escrow.providers import MockPaymentProvider, MockPaymentStore
from marketplace_escrow.services import (
    Actor,
    EscrowLedger,
    ListingSnapshot,
    OrderService,
    PaymentOutcome,
    TransactionJournal,
)

# In-memory SQLite shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = "whsec_test_secret"

PaymentMethodFactory = Callable[..., Awaitable[PaymentMethod]]


@pytest.fixture
async def engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> MockPaymentStore:
    return MockPaymentStore.with_test_cards()


@pytest.fixture
def provider(store: MockPaymentStore, clock: FrozenClock) -> MockPaymentProvider:
    return MockPaymentProvider(store, clock, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def events(emitter: EventEmitter) -> list[DomainEvent]:
    """Every event emitted during the test, in order."""
    collected: list[DomainEvent] = []
    emitter.on_all(collected.append)
    return collected


@pytest.fixture
def journal(session: AsyncSession, clock: FrozenClock) -> TransactionJournal:
    return TransactionJournal(session, clock)


@pytest.fixture
def ledger(session, provider, journal, clock, emitter) -> EscrowLedger:
    return EscrowLedger(session, provider, journal, clock=clock, emitter=emitter)


@pytest.fixture
def orders(session, provider, journal, ledger, clock, emitter) -> OrderService:
    return OrderService(
        session,
        provider,
        clock=clock,
        journal=journal,
        ledger=ledger,
        emitter=emitter,
    )


@pytest.fixture
def buyer() -> Actor:
    return Actor(user_id=uuid4())


@pytest.fixture
def seller() -> Actor:
    return Actor(user_id=uuid4())


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=uuid4(), role="admin")


@pytest.fixture
def stranger() -> Actor:
    return Actor(user_id=uuid4())


@pytest.fixture
def listing(seller: Actor) -> ListingSnapshot:
    return ListingSnapshot(
        listing_id=uuid4(),
        seller_id=seller.user_id,
        unit_price=Decimal("100.00"),
    )


@pytest.fixture
def payment_method_factory(session: AsyncSession, clock: FrozenClock) -> PaymentMethodFactory:
    """Store a masked card for a user. The mock provider keys scenarios on last4."""

    async def make(
        user_id: UUID,
        last4: str = "4242",
        *,
        expiry_month: int = 12,
        expiry_year: int = 2030,
        is_active: bool = True,
        is_default: bool = False,
    ) -> PaymentMethod:
        method = PaymentMethod(
            id=uuid4(),
            user_id=user_id,
            type="credit_card",
            provider="mock",
            masked_details={
                "last4": last4,
                "brand": "visa",
                "expiry_month": expiry_month,
                "expiry_year": expiry_year,
            },
            is_default=is_default,
            is_active=is_active,
            is_verified=True,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        session.add(method)
        await session.flush()
        return method

    return make


@pytest.fixture
async def card(payment_method_factory: PaymentMethodFactory, buyer: Actor) -> PaymentMethod:
    return await payment_method_factory(buyer.user_id)


@pytest.fixture
async def pending_order(orders: OrderService, buyer: Actor, listing: ListingSnapshot):
    order = await orders.create_order(buyer, listing)
    await orders.session.commit()
    return order


@pytest.fixture
async def paid(
    orders: OrderService, pending_order, buyer: Actor, card: PaymentMethod
) -> PaymentOutcome:
    """A $100 order paid with a good card: order paid, hold of $92.10 open."""
    outcome = await orders.process_payment(pending_order.id, buyer, card.id)
    await orders.session.commit()
    return outcome
