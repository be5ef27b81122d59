"""Tests for the escrow ledger.

Covers:
1. Auto-release after the hold window (and not before)
2. Disputes freezing a hold so the sweep skips it
3. Partial and full releases, with conservation against the journal
4. Provider failures restoring the hold and journalling the attempt
5. Refunds and dispute resolution
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from marketplace_escrow.errors import (
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    PaymentError,
)
from marketplace_escrow.events import (
    EscrowDisputed,
    EscrowRefunded,
    EscrowReleased,
    EscrowReleaseFailed,
    OrderCompleted,
)
from marketplace_escrow.providers import TransactionStatus
from marketplace_escrow.services import AUTO_RELEASE_REASON, TransactionType


async def pay_another_order(orders, buyer, listing, card):
    order = await orders.create_order(buyer, listing)
    outcome = await orders.process_payment(order.id, buyer, card.id)
    await orders.session.commit()
    return outcome


class TestAutoRelease:
    """Holds release themselves once auto_release_at has passed."""

    async def test_hold_opened_for_seller_share(self, paid):
        hold = paid.hold

        assert hold.status == "held"
        assert hold.amount == Decimal("92.10")
        assert hold.auto_release_at == hold.created_at + timedelta(hours=72)
        assert hold.release_condition == "auto_release_or_buyer_confirmation"

    async def test_not_released_before_due(self, ledger, paid, clock):
        clock.advance(hours=71)

        result = await ledger.process_auto_releases()

        assert result.processed == 0
        assert paid.hold.status == "held"

    async def test_released_after_timeout(self, ledger, journal, paid, clock, events):
        """After 72 hours the sweep captures the hold and completes the order."""
        clock.advance(hours=73)

        result = await ledger.process_auto_releases()

        assert result.processed == 1
        assert result.released == [paid.hold.id]
        assert paid.hold.status == "released"
        assert paid.hold.released_by == "system"
        assert paid.hold.release_reason == AUTO_RELEASE_REASON
        assert paid.hold.released_amount == Decimal("92.10")
        assert paid.hold.auto_release_at is None
        assert paid.order.status == "completed"
        assert paid.order.completed_at is not None

        captures = await journal.list_for_order(paid.order.id, TransactionType.CAPTURE)
        assert len(captures) == 1
        assert captures[0].amount == Decimal("92.10")
        assert captures[0].escrow_hold_id == paid.hold.id

        released = [e for e in events if isinstance(e, EscrowReleased)]
        assert len(released) == 1
        assert released[0].partial is False
        assert any(isinstance(e, OrderCompleted) for e in events)

    async def test_second_sweep_is_a_noop(self, ledger, paid, clock):
        clock.advance(hours=73)
        await ledger.process_auto_releases()

        result = await ledger.process_auto_releases()

        assert result.processed == 0

    async def test_one_failure_does_not_stop_the_sweep(
        self, ledger, journal, orders, provider, paid, buyer, listing, card, clock, events
    ):
        """A hold whose capture fails is restored and reported; others still release."""
        other = await pay_another_order(orders, buyer, listing, card)
        provider.simulate_status(
            paid.transaction.provider_transaction_id, TransactionStatus.FAILED
        )
        clock.advance(hours=80)

        result = await ledger.process_auto_releases()

        assert result.processed == 2
        assert result.released == [other.hold.id]
        assert list(result.failed) == [paid.hold.id]

        assert paid.hold.status == "held"
        assert paid.hold.auto_release_at is not None
        assert paid.order.status == "paid"
        assert other.hold.status == "released"

        failed = [
            t
            for t in await journal.list_for_order(paid.order.id, TransactionType.CAPTURE)
            if t.status == "failed"
        ]
        assert len(failed) == 1
        assert any(isinstance(e, EscrowReleaseFailed) for e in events)


class TestDispute:
    async def test_dispute_blocks_auto_release(self, ledger, paid, buyer, clock, events):
        await ledger.dispute(
            paid.hold.id, reason="Item not received", disputed_by=str(buyer.user_id)
        )
        clock.advance(days=30)

        result = await ledger.process_auto_releases()

        assert result.processed == 0
        assert paid.hold.status == "disputed"
        assert paid.hold.auto_release_at is None
        assert paid.order.status == "disputed"
        assert paid.order.dispute_reason == "Item not received"
        assert any(isinstance(e, EscrowDisputed) for e in events)

    async def test_disputed_hold_cannot_be_released(self, ledger, paid, buyer):
        await ledger.dispute(paid.hold.id, reason="Wrong item", disputed_by=str(buyer.user_id))

        with pytest.raises(InvalidStateError):
            await ledger.release(paid.hold.id, reason="manual", released_by="admin")

    async def test_cannot_dispute_twice(self, ledger, paid, buyer):
        await ledger.dispute(paid.hold.id, reason="Wrong item", disputed_by=str(buyer.user_id))

        with pytest.raises(InvalidStateError):
            await ledger.dispute(paid.hold.id, reason="Again", disputed_by=str(buyer.user_id))


class TestRelease:
    async def test_partial_release(self, ledger, paid, events):
        """A partial release captures part of the hold and leaves the order alone."""
        hold = await ledger.release(
            paid.hold.id, amount=Decimal("50.00"), reason="Partial delivery", released_by="admin"
        )

        assert hold.status == "partial_release"
        assert hold.released_amount == Decimal("50.00")
        assert paid.order.status == "paid"
        released = [e for e in events if isinstance(e, EscrowReleased)]
        assert released[0].partial is True

    async def test_partial_release_is_terminal(self, ledger, paid):
        await ledger.release(
            paid.hold.id, amount=Decimal("50.00"), reason="Partial", released_by="admin"
        )

        with pytest.raises(InvalidStateError):
            await ledger.release(paid.hold.id, reason="Rest", released_by="admin")

    async def test_release_more_than_held(self, ledger, paid):
        with pytest.raises(InvalidAmountError):
            await ledger.release(
                paid.hold.id, amount=Decimal("92.11"), reason="Too much", released_by="admin"
            )

        assert paid.hold.status == "held"

    async def test_conservation_against_journal(self, ledger, journal, paid):
        """Captures already journalled against the hold count toward its total."""
        await journal.record(
            order_id=paid.order.id,
            type=TransactionType.CAPTURE,
            amount=Decimal("50.00"),
            currency="USD",
            provider="mock",
            provider_transaction_id=paid.transaction.provider_transaction_id,
            status=TransactionStatus.COMPLETED,
            escrow_hold_id=paid.hold.id,
        )

        with pytest.raises(InvalidAmountError):
            await ledger.release(paid.hold.id, reason="Full", released_by="admin")

    async def test_provider_failure_restores_hold(self, ledger, journal, provider, paid):
        provider.simulate_status(
            paid.transaction.provider_transaction_id, TransactionStatus.CANCELLED
        )
        auto_release_at = paid.hold.auto_release_at

        with pytest.raises(PaymentError):
            await ledger.release(paid.hold.id, reason="Manual", released_by="admin")

        assert paid.hold.status == "held"
        assert paid.hold.auto_release_at == auto_release_at
        assert paid.hold.released_at is None
        captures = await journal.list_for_order(paid.order.id, TransactionType.CAPTURE)
        assert [c.status for c in captures] == ["failed"]

    async def test_unknown_hold(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.release(uuid4(), reason="x", released_by="admin")


class TestRefund:
    async def test_refund_held_escrow(self, ledger, journal, store, paid, events):
        hold = await ledger.refund(paid.hold.id, reason="Seller unavailable", refunded_by="admin")

        assert hold.status == "refunded"
        assert paid.order.status == "refunded"
        assert paid.order.payment_status == "refunded"
        refunds = await journal.list_for_order(paid.order.id, TransactionType.REFUND)
        assert len(refunds) == 1
        assert refunds[0].amount == Decimal("92.10")
        assert refunds[0].provider_transaction_id.startswith("ref_mock_")
        txn = store.transactions[paid.transaction.provider_transaction_id]
        assert txn.refunded_amount == Decimal("92.10")
        assert any(isinstance(e, EscrowRefunded) for e in events)

    async def test_refund_released_hold_rejected(self, ledger, paid):
        await ledger.release(paid.hold.id, reason="Done", released_by="admin")

        with pytest.raises(InvalidStateError):
            await ledger.refund(paid.hold.id, reason="Too late", refunded_by="admin")

    async def test_refund_without_order_cascade(self, ledger, paid):
        await ledger.refund(
            paid.hold.id, reason="Cancelled", refunded_by="buyer", cascade_order=False
        )

        assert paid.hold.status == "refunded"
        assert paid.order.status == "paid"


class TestResolveDispute:
    async def test_resolve_in_sellers_favour(self, ledger, paid, buyer):
        await ledger.dispute(paid.hold.id, reason="Late", disputed_by=str(buyer.user_id))

        hold = await ledger.resolve_dispute(
            paid.hold.id, outcome="release", reason="Delivered on time", resolved_by="admin"
        )

        assert hold.status == "released"
        assert paid.order.status == "completed"

    async def test_resolve_in_buyers_favour(self, ledger, paid, buyer):
        await ledger.dispute(paid.hold.id, reason="Scam", disputed_by=str(buyer.user_id))

        hold = await ledger.resolve_dispute(
            paid.hold.id, outcome="refund", reason="Never delivered", resolved_by="admin"
        )

        assert hold.status == "refunded"
        assert paid.order.status == "refunded"

    async def test_only_disputed_holds(self, ledger, paid):
        with pytest.raises(InvalidStateError):
            await ledger.resolve_dispute(
                paid.hold.id, outcome="release", reason="x", resolved_by="admin"
            )


class TestCreateHold:
    async def test_one_held_hold_per_order(self, ledger, paid):
        with pytest.raises(InvalidStateError):
            await ledger.create_hold(
                order_id=paid.order.id,
                transaction_id=paid.transaction.id,
                amount=Decimal("10.00"),
            )

    async def test_standalone_window(self, ledger, paid, clock):
        await ledger.refund(paid.hold.id, reason="Reissue", refunded_by="admin", cascade_order=False)

        hold = await ledger.create_hold(
            order_id=paid.order.id,
            transaction_id=paid.transaction.id,
            amount=Decimal("10.00"),
        )

        assert hold.auto_release_at == clock.now() + timedelta(days=7)
        assert hold.release_condition == "buyer_confirmation_or_timeout"

    async def test_amount_cannot_exceed_payment(self, ledger, paid):
        await ledger.refund(paid.hold.id, reason="Reissue", refunded_by="admin", cascade_order=False)

        with pytest.raises(InvalidAmountError):
            await ledger.create_hold(
                order_id=paid.order.id,
                transaction_id=paid.transaction.id,
                amount=Decimal("100.01"),
            )

    async def test_requires_secured_payment(self, ledger, journal, pending_order):
        failed = await journal.record(
            order_id=pending_order.id,
            type=TransactionType.PAYMENT,
            amount=pending_order.total_amount,
            currency="USD",
            provider="mock",
            provider_transaction_id=None,
            status=TransactionStatus.FAILED,
        )

        with pytest.raises(InvalidStateError):
            await ledger.create_hold(
                order_id=pending_order.id, transaction_id=failed.id, amount=Decimal("10.00")
            )


class TestQueries:
    async def test_escrow_status(self, ledger, paid):
        hold = await ledger.get_escrow_status(paid.order.id)
        assert hold.id == paid.hold.id

    async def test_escrow_status_without_hold(self, ledger, pending_order):
        with pytest.raises(NotFoundError):
            await ledger.get_escrow_status(pending_order.id)

    async def test_list_holds_by_status(self, ledger, paid):
        assert [h.id for h in await ledger.list_holds(status="held")] == [paid.hold.id]
        assert await ledger.list_holds(status="released") == []
