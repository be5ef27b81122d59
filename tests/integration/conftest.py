"""Integration test fixtures: the full FastAPI app over an in-memory database."""

from collections.abc import AsyncGenerator
from dataclasses import replace
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from marketplace_escrow.api import create_app
from marketplace_escrow.config import Settings


@pytest.fixture
def settings() -> Settings:
    return replace(
        Settings.from_env(),
        database_url="sqlite+aiosqlite://",
        debug=False,
        environment="test",
        payment_provider="mock",
        webhook_secret="whsec_test_secret",
        platform_fee_percent=Decimal("5"),
        processing_fee_percent=Decimal("2.9"),
        min_transaction_amount=Decimal("1.00"),
        max_transaction_amount=Decimal("10000"),
        order_expiry_hours=24,
        payment_hold_hours=72,
        strict_field_permissions=False,
    )


@pytest.fixture
def app(settings, provider, clock, emitter, session_factory):
    return create_app(
        settings,
        provider=provider,
        clock=clock,
        emitter=emitter,
        session_factory=session_factory,
    )


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth(actor_id: UUID, role: str | None = None) -> dict[str, str]:
    headers = {"X-User-ID": str(actor_id)}
    if role:
        headers["X-User-Role"] = role
    return headers


@pytest.fixture
def buyer_id() -> UUID:
    return uuid4()


@pytest.fixture
def seller_id() -> UUID:
    return uuid4()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth(uuid4(), "admin")


@pytest.fixture
async def api_card(client, buyer_id) -> dict:
    """The buyer's 4242 card, registered through the API."""
    response = await client.post(
        "/api/v1/payment-methods",
        headers=auth(buyer_id),
        json={"number": "4242424242424242", "expiry_month": 12, "expiry_year": 2030, "cvc": "123"},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
def create_order(client, buyer_id, seller_id):
    async def create(unit_price: str = "100.00", **extra) -> dict:
        response = await client.post(
            "/api/v1/orders",
            headers=auth(buyer_id),
            json={
                "listing_id": str(uuid4()),
                "seller_id": str(seller_id),
                "unit_price": unit_price,
                **extra,
            },
        )
        assert response.status_code == 201, response.text
        return response.json()["data"]

    return create


@pytest.fixture
async def paid_order(client, buyer_id, api_card, create_order) -> dict:
    """A $100 order paid through the API; the response data."""
    order = await create_order()
    response = await client.post(
        "/api/v1/payments/process",
        headers=auth(buyer_id),
        json={"order_id": order["id"], "payment_method_id": api_card["id"]},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]
