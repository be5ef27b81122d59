"""Tests for the order service.

End-to-end flows through order, provider, journal and escrow:
- checkout, payment, delivery and confirmation (happy path)
- declined payments leave the order pending with a failed journal entry
- cancelling a paid order refunds its escrow
- lazy expiry, party permissions, field ownership
- processing payments settled by polling
"""

import re
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from marketplace_escrow.errors import (
    AuthenticationError,
    AuthorizationError,
    InsufficientFundsError,
    InternalError,
    InvalidAmountError,
    InvalidPaymentMethodError,
    InvalidStateError,
    OrderExpiredError,
    ValidationError,
)
from marketplace_escrow.events import (
    EscrowHoldCreated,
    OrderCancelled,
    OrderCreated,
    OrderPaid,
    PaymentFailed,
)
from marketplace_escrow.models import Order
from marketplace_escrow.providers import TransactionStatus
from marketplace_escrow.services import (
    Actor,
    ListingSnapshot,
    OrderConfig,
    OrderService,
    OrderUpdate,
    TransactionType,
)


def listing_at(seller, price):
    return ListingSnapshot(listing_id=uuid4(), seller_id=seller.user_id, unit_price=Decimal(price))


class TestCreateOrder:
    async def test_pending_order_with_fees(self, orders, buyer, seller, listing, clock, events):
        order = await orders.create_order(buyer, listing, quantity=2)

        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.delivery_status == "pending"
        assert order.total_amount == Decimal("200.00")
        assert order.platform_fee == Decimal("10.00")
        assert order.processing_fee == Decimal("5.80")
        assert order.seller_amount == Decimal("184.20")
        assert order.expires_at == clock.now() + timedelta(hours=24)
        assert re.fullmatch(r"ORD-\d+-[0-9A-F]{6}", order.order_number)
        assert isinstance(events[-1], OrderCreated)

    async def test_cannot_buy_own_listing(self, orders, seller, listing):
        with pytest.raises(ValidationError):
            await orders.create_order(seller, listing)

    async def test_inactive_listing(self, orders, buyer, seller):
        listing = ListingSnapshot(
            listing_id=uuid4(), seller_id=seller.user_id, unit_price=Decimal("10"), is_active=False
        )
        with pytest.raises(ValidationError):
            await orders.create_order(buyer, listing)

    async def test_insufficient_stock(self, orders, buyer, seller):
        listing = ListingSnapshot(
            listing_id=uuid4(),
            seller_id=seller.user_id,
            unit_price=Decimal("10"),
            available_quantity=1,
        )
        with pytest.raises(ValidationError):
            await orders.create_order(buyer, listing, quantity=2)

    async def test_amount_limits(self, orders, buyer, seller):
        with pytest.raises(InvalidAmountError):
            await orders.create_order(buyer, listing_at(seller, "0.50"))

    async def test_requires_user(self, orders, listing):
        with pytest.raises(AuthenticationError):
            await orders.create_order(Actor.system(), listing)


class TestProcessPayment:
    """Payment drives the order out of pending and into escrow."""

    async def test_successful_payment(self, orders, pending_order, buyer, card, events):
        outcome = await orders.process_payment(pending_order.id, buyer, card.id)

        assert outcome.completed is True
        assert outcome.order.status == "paid"
        assert outcome.order.payment_status == "completed"
        assert outcome.order.paid_at is not None
        assert outcome.transaction.status == "completed"
        assert outcome.transaction.risk_score == 0
        assert outcome.transaction.payment_method_id == card.id
        assert outcome.hold.amount == outcome.order.seller_amount
        assert outcome.hold.status == "held"

        types = [type(e) for e in events]
        assert OrderPaid in types
        assert EscrowHoldCreated in types

    async def test_declined_payment(
        self, orders, journal, pending_order, buyer, payment_method_factory, events
    ):
        """The failed attempt is journalled and the order stays pending."""
        card = await payment_method_factory(buyer.user_id, "0002")

        with pytest.raises(InsufficientFundsError):
            await orders.process_payment(pending_order.id, buyer, card.id)

        order = await orders.get_order(pending_order.id)
        assert order.status == "pending"
        attempts = await journal.list_for_order(order.id)
        assert len(attempts) == 1
        assert attempts[0].status == "failed"
        assert attempts[0].failure_reason == "Insufficient funds"
        assert attempts[0].processed_at is not None
        failed = [e for e in events if isinstance(e, PaymentFailed)]
        assert failed[0].error_code == "INSUFFICIENT_FUNDS"

    async def test_only_buyer_can_pay(self, orders, journal, pending_order, seller, card):
        with pytest.raises(AuthorizationError):
            await orders.process_payment(pending_order.id, seller, card.id)

        assert await journal.list_for_order(pending_order.id) == []

    async def test_cannot_pay_twice(self, orders, paid, buyer, card):
        with pytest.raises(InvalidStateError):
            await orders.process_payment(paid.order.id, buyer, card.id)

    async def test_expired_order(self, orders, store, pending_order, buyer, card, clock, events):
        """Paying after the expiry window cancels the order without charging."""
        clock.advance(hours=25)

        with pytest.raises(OrderExpiredError):
            await orders.process_payment(pending_order.id, buyer, card.id)

        order = await orders.get_order(pending_order.id)
        assert order.status == "cancelled"
        assert store.transactions == {}
        assert any(isinstance(e, OrderCancelled) for e in events)

    async def test_inactive_payment_method(
        self, orders, pending_order, buyer, payment_method_factory
    ):
        card = await payment_method_factory(buyer.user_id, is_active=False)

        with pytest.raises(InvalidPaymentMethodError):
            await orders.process_payment(pending_order.id, buyer, card.id)

    async def test_someone_elses_payment_method(
        self, orders, pending_order, buyer, stranger, payment_method_factory
    ):
        card = await payment_method_factory(stranger.user_id)

        with pytest.raises(InvalidPaymentMethodError):
            await orders.process_payment(pending_order.id, buyer, card.id)

    async def test_processing_payment_settles_on_poll(
        self, orders, buyer, seller, card, clock
    ):
        """A processing charge moves the order to processing; polling settles it."""
        order = await orders.create_order(buyer, listing_at(seller, "500.00"))

        outcome = await orders.process_payment(order.id, buyer, card.id)

        assert outcome.completed is False
        assert outcome.hold is None
        assert order.status == "processing"

        clock.advance(seconds=10)
        order = await orders.refresh_payment_status(order.id, buyer)

        assert order.status == "paid"
        hold = await orders.ledger.get_escrow_status(order.id)
        assert hold.status == "held"
        assert hold.amount == order.seller_amount

    async def test_requires_customer_action(
        self, orders, pending_order, buyer, payment_method_factory
    ):
        """A 3-D Secure challenge leaves the order pending."""
        card = await payment_method_factory(buyer.user_id, "3220")

        outcome = await orders.process_payment(pending_order.id, buyer, card.id)

        assert outcome.result.requires_action is True
        assert outcome.result.redirect_url is not None
        assert outcome.order.status == "pending"
        assert outcome.transaction.status == "pending"
        assert outcome.transaction.processed_at is None

    async def test_second_payment_blocked_while_first_awaits_action(
        self, orders, store, pending_order, buyer, card, payment_method_factory
    ):
        """A buyer stuck in a 3-D Secure challenge cannot start a second charge."""
        challenged = await payment_method_factory(buyer.user_id, "3220")
        await orders.process_payment(pending_order.id, buyer, challenged.id)

        with pytest.raises(InvalidStateError):
            await orders.process_payment(pending_order.id, buyer, card.id)

        assert len(store.transactions) == 1
        assert pending_order.status == "pending"

    async def test_unexpected_provider_error(
        self, orders, journal, provider, pending_order, buyer, card, monkeypatch
    ):
        async def explode(request):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(provider, "process_payment", explode)

        with pytest.raises(InternalError):
            await orders.process_payment(pending_order.id, buyer, card.id)

        attempts = await journal.list_for_order(pending_order.id)
        assert [a.status for a in attempts] == ["failed"]

    async def test_order_changed_during_payment_is_refunded(
        self, orders, journal, provider, store, pending_order, buyer, card, monkeypatch
    ):
        """If the order leaves pending mid-charge, the charge is refunded."""
        charge = provider.process_payment

        async def charge_then_cancel(request):
            result = await charge(request)
            await orders.session.execute(
                update(Order).where(Order.id == pending_order.id).values(status="cancelled")
            )
            return result

        monkeypatch.setattr(provider, "process_payment", charge_then_cancel)

        with pytest.raises(InvalidStateError):
            await orders.process_payment(pending_order.id, buyer, card.id)

        (txn,) = store.transactions.values()
        assert txn.refunded_amount == txn.amount
        refunds = await journal.list_for_order(pending_order.id, TransactionType.REFUND)
        assert len(refunds) == 1
        assert await orders.ledger.list_holds(order_id=pending_order.id) == []


class TestCancelOrder:
    async def test_either_party_cancels_pending(self, orders, pending_order, seller):
        order = await orders.cancel_order(pending_order.id, seller)

        assert order.status == "cancelled"
        assert order.cancelled_at is not None

    async def test_buyer_cancels_paid_order_with_refund(
        self, orders, journal, store, paid, buyer
    ):
        order = await orders.cancel_order(paid.order.id, buyer, "Changed my mind")

        assert order.status == "cancelled"
        assert order.payment_status == "refunded"
        assert paid.hold.status == "refunded"
        refunds = await journal.list_for_order(order.id, TransactionType.REFUND)
        assert [r.amount for r in refunds] == [paid.hold.amount]
        txn = store.transactions[paid.transaction.provider_transaction_id]
        assert txn.refunded_amount == paid.hold.amount

    async def test_seller_cannot_cancel_paid_order(self, orders, paid, seller):
        with pytest.raises(AuthorizationError):
            await orders.cancel_order(paid.order.id, seller)

    async def test_delivered_order_cannot_be_cancelled(self, orders, paid, buyer, seller):
        await orders.mark_delivered(paid.order.id, seller)

        with pytest.raises(InvalidStateError):
            await orders.cancel_order(paid.order.id, buyer)

    async def test_stranger_cannot_cancel(self, orders, pending_order, stranger):
        with pytest.raises(AuthorizationError):
            await orders.cancel_order(pending_order.id, stranger)

    async def test_partly_released_order_cannot_be_cancelled(
        self, orders, journal, paid, buyer, admin
    ):
        await orders.ledger.release(
            paid.hold.id, amount=Decimal("40.00"), reason="First item", released_by=admin.label
        )

        with pytest.raises(InvalidStateError):
            await orders.cancel_order(paid.order.id, buyer)

        order = await orders.get_order(paid.order.id)
        assert order.status == "paid"
        assert order.payment_status == "completed"
        assert await journal.list_for_order(order.id, TransactionType.REFUND) == []


class TestDelivery:
    async def test_seller_marks_delivered(self, orders, paid, seller, clock):
        order = await orders.mark_delivered(paid.order.id, seller, [{"screenshot": "s3://proof"}])

        assert order.status == "delivered"
        assert order.delivery_status == "delivered"
        assert order.delivered_at == clock.now()
        assert order.delivery_proof == [{"screenshot": "s3://proof"}]

    async def test_buyer_cannot_mark_delivered(self, orders, paid, buyer):
        with pytest.raises(AuthorizationError):
            await orders.mark_delivered(paid.order.id, buyer)

    async def test_unpaid_order_cannot_be_delivered(self, orders, pending_order, seller):
        with pytest.raises(InvalidStateError):
            await orders.mark_delivered(pending_order.id, seller)

    async def test_buyer_confirms_delivery(self, orders, journal, paid, buyer, seller):
        """Happy path: confirmation releases escrow and completes the order."""
        await orders.mark_delivered(paid.order.id, seller)

        order = await orders.confirm_delivery(paid.order.id, buyer)

        assert order.status == "completed"
        assert order.payment_status == "captured"
        assert paid.hold.status == "released"
        assert paid.hold.released_by == str(buyer.user_id)
        captures = await journal.list_for_order(order.id, TransactionType.CAPTURE)
        assert [c.amount for c in captures] == [order.seller_amount]

    async def test_seller_cannot_confirm(self, orders, paid, seller):
        await orders.mark_delivered(paid.order.id, seller)

        with pytest.raises(AuthorizationError):
            await orders.confirm_delivery(paid.order.id, seller)

    async def test_confirm_requires_delivery(self, orders, paid, buyer):
        with pytest.raises(InvalidStateError):
            await orders.confirm_delivery(paid.order.id, buyer)


class TestUpdateOrder:
    """Field ownership: each party writes its own notes."""

    async def test_other_partys_fields_dropped(self, orders, pending_order, buyer):
        result = await orders.update_order(
            pending_order.id,
            buyer,
            OrderUpdate(buyer_notes="Please hurry", seller_notes="Sneaky"),
        )

        assert result.dropped_fields == ("seller_notes",)
        assert result.order.buyer_notes == "Please hurry"
        assert result.order.seller_notes is None

    async def test_strict_mode_rejects(
        self, session, provider, clock, journal, ledger, pending_order, buyer
    ):
        strict = OrderService(
            session,
            provider,
            clock=clock,
            journal=journal,
            ledger=ledger,
            config=OrderConfig(strict_field_permissions=True),
        )

        with pytest.raises(AuthorizationError):
            await strict.update_order(pending_order.id, buyer, OrderUpdate(seller_notes="x"))

    async def test_seller_delivers_through_update(self, orders, paid, seller):
        result = await orders.update_order(
            paid.order.id,
            seller,
            OrderUpdate(status="delivered", seller_notes="Sent in game", delivery_proof=["trade-id-1"]),
        )

        assert result.order.status == "delivered"
        assert result.order.seller_notes == "Sent in game"
        assert result.order.delivery_proof == ["trade-id-1"]

    async def test_buyer_cannot_add_delivery_proof(self, orders, paid, buyer):
        result = await orders.update_order(
            paid.order.id, buyer, OrderUpdate(delivery_proof=["fake"])
        )

        assert result.dropped_fields == ("delivery_proof",)
        assert result.order.delivery_proof == []

    async def test_unsupported_status(self, orders, paid, buyer):
        with pytest.raises(ValidationError):
            await orders.update_order(paid.order.id, buyer, OrderUpdate(status="completed"))

    async def test_stranger_cannot_update(self, orders, pending_order, stranger):
        with pytest.raises(AuthorizationError):
            await orders.update_order(pending_order.id, stranger, OrderUpdate(buyer_notes="x"))


class TestDispute:
    async def test_buyer_disputes_delivered_order(self, orders, paid, buyer, seller):
        await orders.mark_delivered(paid.order.id, seller)

        order = await orders.dispute_order(
            paid.order.id, buyer, "Item not as described", {"evidence": ["chat.png"]}
        )

        assert order.status == "disputed"
        assert order.dispute_details == {"evidence": ["chat.png"]}
        assert paid.hold.status == "disputed"

    async def test_reason_required(self, orders, paid, buyer):
        with pytest.raises(ValidationError):
            await orders.dispute_order(paid.order.id, buyer, "   ")

    async def test_pending_order_not_disputable(self, orders, pending_order, buyer):
        with pytest.raises(InvalidStateError):
            await orders.dispute_order(pending_order.id, buyer, "Why")

    async def test_stranger_cannot_dispute(self, orders, paid, stranger):
        with pytest.raises(AuthorizationError):
            await orders.dispute_order(paid.order.id, stranger, "Because")

    async def test_partly_released_order_not_disputable(self, orders, paid, buyer, admin):
        await orders.ledger.release(
            paid.hold.id, amount=Decimal("40.00"), reason="First item", released_by=admin.label
        )

        with pytest.raises(InvalidStateError):
            await orders.dispute_order(paid.order.id, buyer, "Second item missing")

        assert paid.hold.status == "partial_release"
        assert (await orders.get_order(paid.order.id)).status == "paid"


class TestAdminActions:
    async def test_refund_requires_admin(self, orders, paid, buyer):
        with pytest.raises(AuthorizationError):
            await orders.refund_order(paid.order.id, buyer, "Please")

    async def test_refund_paid_order(self, orders, paid, admin):
        order = await orders.refund_order(paid.order.id, admin, "Seller banned")

        assert order.status == "refunded"
        assert paid.hold.status == "refunded"

    async def test_refund_completed_order(self, orders, journal, paid, buyer, seller, admin):
        """After release, the captured amount is refunded directly."""
        await orders.mark_delivered(paid.order.id, seller)
        await orders.confirm_delivery(paid.order.id, buyer)

        order = await orders.refund_order(paid.order.id, admin, "Chargeback settlement")

        assert order.status == "refunded"
        refunds = await journal.list_for_order(order.id, TransactionType.REFUND)
        assert [r.amount for r in refunds] == [order.seller_amount]

    async def test_refund_after_partial_release(self, orders, journal, store, paid, admin):
        """Only the part still held is returned to the buyer."""
        await orders.ledger.release(
            paid.hold.id, amount=Decimal("40.00"), reason="First item", released_by=admin.label
        )

        order = await orders.refund_order(paid.order.id, admin, "Second item never arrived")

        assert order.status == "refunded"
        refunds = await journal.list_for_order(order.id, TransactionType.REFUND)
        assert [r.amount for r in refunds] == [Decimal("52.10")]
        assert refunds[0].escrow_hold_id == paid.hold.id
        txn = store.transactions[paid.transaction.provider_transaction_id]
        assert txn.refunded_amount == Decimal("52.10")

    async def test_refund_twice_rejected(self, orders, paid, admin):
        await orders.refund_order(paid.order.id, admin, "Once")

        with pytest.raises(InvalidStateError):
            await orders.refund_order(paid.order.id, admin, "Twice")

    async def test_resolve_dispute(self, orders, paid, buyer, admin):
        await orders.dispute_order(paid.order.id, buyer, "Never arrived")

        order = await orders.resolve_dispute(
            paid.order.id, admin, outcome="refund", notes="Seller could not prove delivery"
        )

        assert order.status == "refunded"
        assert order.resolution_notes == "Seller could not prove delivery"

    async def test_resolve_requires_admin(self, orders, paid, buyer):
        await orders.dispute_order(paid.order.id, buyer, "Never arrived")

        with pytest.raises(AuthorizationError):
            await orders.resolve_dispute(paid.order.id, buyer, outcome="refund", notes="Mine")


class TestSettlement:
    async def _processing_order(self, orders, buyer, seller, card):
        order = await orders.create_order(buyer, listing_at(seller, "500.00"))
        outcome = await orders.process_payment(order.id, buyer, card.id)
        return outcome

    async def test_settle_is_idempotent(self, orders, buyer, seller, card):
        outcome = await self._processing_order(orders, buyer, seller, card)

        await orders.settle_payment(outcome.transaction)
        await orders.settle_payment(outcome.transaction)

        holds = await orders.ledger.list_holds(order_id=outcome.order.id)
        assert len(holds) == 1
        assert outcome.order.status == "paid"

    async def test_failed_processing_payment_cancels_order(self, orders, buyer, seller, card):
        outcome = await self._processing_order(orders, buyer, seller, card)

        order = await orders.fail_payment(outcome.transaction, "Bank rejected transfer")

        assert order.status == "cancelled"
        assert order.payment_status == "failed"
        assert outcome.transaction.status == "failed"

    async def test_settlement_after_cancel_is_refunded(
        self, orders, journal, provider, store, pending_order, buyer, payment_method_factory
    ):
        """A charge confirmed after the order was cancelled goes back to the buyer."""
        challenged = await payment_method_factory(buyer.user_id, "3220")
        outcome = await orders.process_payment(pending_order.id, buyer, challenged.id)
        await orders.cancel_order(pending_order.id, buyer, "Gave up on the challenge")
        provider.simulate_status(outcome.result.transaction_id, TransactionStatus.COMPLETED)

        order = await orders.settle_payment(outcome.transaction)

        assert order.status == "cancelled"
        assert outcome.transaction.status == "completed"
        refunds = await journal.list_for_order(order.id, TransactionType.REFUND)
        assert [r.amount for r in refunds] == [outcome.transaction.amount]
        txn = store.transactions[outcome.result.transaction_id]
        assert txn.refunded_amount == txn.amount
        assert await orders.ledger.list_holds(order_id=order.id) == []

    async def test_refresh_without_open_payment(self, orders, paid, buyer):
        order = await orders.refresh_payment_status(paid.order.id, buyer)
        assert order.status == "paid"


class TestExpirePendingOrders:
    async def test_only_expired_orders_cancelled(self, orders, buyer, listing, clock):
        old = await orders.create_order(buyer, listing)
        clock.advance(hours=12)
        fresh = await orders.create_order(buyer, listing)
        clock.advance(hours=13)

        expired = await orders.expire_pending_orders()

        assert expired == [old.id]
        assert old.status == "cancelled"
        assert fresh.status == "pending"


class TestVisibility:
    async def test_parties_and_admin_can_read(self, orders, pending_order, buyer, seller, admin):
        for actor in (buyer, seller, admin):
            assert (await orders.get_order_for(pending_order.id, actor)).id == pending_order.id

    async def test_stranger_cannot_read(self, orders, pending_order, stranger):
        with pytest.raises(AuthorizationError):
            await orders.get_order_for(pending_order.id, stranger)

    async def test_list_orders_for_parties(self, orders, buyer, seller, stranger, admin, clock):
        first = await orders.create_order(buyer, listing_at(seller, "10.00"))
        clock.advance(minutes=1)
        second = await orders.create_order(buyer, listing_at(seller, "20.00"))

        mine = await orders.list_orders(buyer)
        as_seller = await orders.list_orders(seller, role="seller")
        as_buyer = await orders.list_orders(seller, role="buyer")

        assert [o.id for o in mine.items] == [second.id, first.id]
        assert mine.total == 2
        assert as_seller.total == 2
        assert as_buyer.items == []
        assert (await orders.list_orders(stranger)).total == 0
        assert (await orders.list_orders(admin)).total == 2

    async def test_list_orders_status_and_paging(self, orders, buyer, seller, clock):
        created = []
        for price in ("10.00", "20.00", "30.00"):
            created.append(await orders.create_order(buyer, listing_at(seller, price)))
            clock.advance(minutes=1)
        await orders.cancel_order(created[0].id, buyer)

        cancelled = await orders.list_orders(buyer, status="cancelled")
        page = await orders.list_orders(buyer, page=2, limit=2)

        assert [o.id for o in cancelled.items] == [created[0].id]
        assert [o.id for o in page.items] == [created[0].id]
        assert page.total_pages == 2

    async def test_list_orders_rejects_bad_filters(self, orders, buyer):
        with pytest.raises(ValidationError):
            await orders.list_orders(buyer, role="broker")
        with pytest.raises(ValidationError):
            await orders.list_orders(buyer, status="shipped")

    async def test_order_transactions_visible_to_parties(
        self, orders, paid, buyer, seller, stranger
    ):
        rows = await orders.list_transactions_for(paid.order.id, seller)

        assert [r.id for r in rows] == [paid.transaction.id]
        assert await orders.list_transactions_for(
            paid.order.id, buyer, TransactionType.REFUND
        ) == []
        with pytest.raises(AuthorizationError):
            await orders.list_transactions_for(paid.order.id, stranger)
