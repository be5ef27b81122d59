"""Order and escrow hold state machines with transition validation."""

from __future__ import annotations

from enum import Enum

from marketplace_escrow.errors import InvalidStateError


def status_value(status: str) -> str:
    """Plain string value of a status enum member or raw column value."""
    return status.value if isinstance(status, Enum) else status


class OrderStatus(str, Enum):
    """Order status values."""

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class EscrowStatus(str, Enum):
    """Escrow hold status values."""

    HELD = "held"
    RELEASED = "released"
    PARTIAL_RELEASE = "partial_release"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


class ReleaseCondition(str, Enum):
    BUYER_CONFIRMATION_OR_TIMEOUT = "buyer_confirmation_or_timeout"
    AUTO_RELEASE_OR_BUYER_CONFIRMATION = "auto_release_or_buyer_confirmation"


class OrderStateMachine:
    """State machine for order status transitions.

    Allowed transitions:
    - pending → paid | processing | cancelled
    - paid → processing | delivered | cancelled | disputed
    - paid → completed (escrow auto-release) | refunded (held escrow refunded)
    - processing → paid (provider settled) | delivered | cancelled
    - delivered → completed | disputed | refunded (held escrow refunded)
    - completed → refunded
    - disputed → completed | refunded (dispute resolution)
    - cancelled, refunded are terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        OrderStatus.PENDING: [
            OrderStatus.PAID,
            OrderStatus.PROCESSING,
            OrderStatus.CANCELLED,
        ],
        OrderStatus.PAID: [
            OrderStatus.PROCESSING,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.DISPUTED,
            OrderStatus.COMPLETED,
            OrderStatus.REFUNDED,
        ],
        OrderStatus.PROCESSING: [
            OrderStatus.PAID,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
        ],
        OrderStatus.DELIVERED: [
            OrderStatus.COMPLETED,
            OrderStatus.DISPUTED,
            OrderStatus.REFUNDED,
        ],
        OrderStatus.COMPLETED: [OrderStatus.REFUNDED],
        OrderStatus.DISPUTED: [OrderStatus.COMPLETED, OrderStatus.REFUNDED],
        OrderStatus.CANCELLED: [],  # Terminal state
        OrderStatus.REFUNDED: [],  # Terminal state
    }

    # Statuses a party may cancel from
    CANCELLABLE = {OrderStatus.PENDING, OrderStatus.PAID}

    DELIVERABLE = {OrderStatus.PAID, OrderStatus.PROCESSING}

    DISPUTABLE = {OrderStatus.PAID, OrderStatus.DELIVERED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Raise InvalidStateError if the transition is not allowed."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(
                f"Order cannot move from '{status_value(from_status)}' "
                f"to '{status_value(to_status)}'",
                from_status=status_value(from_status),
                to_status=status_value(to_status),
            )

    @classmethod
    def sources_for(cls, to_status: str) -> list[str]:
        """Statuses from which `to_status` can be reached."""
        return [
            from_status
            for from_status, allowed in cls.VALID_TRANSITIONS.items()
            if to_status in allowed
        ]


class EscrowStateMachine:
    """State machine for escrow hold transitions.

    - held → released | partial_release | disputed | refunded
    - disputed → released | refunded
    - released, partial_release, refunded are terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        EscrowStatus.HELD: [
            EscrowStatus.RELEASED,
            EscrowStatus.PARTIAL_RELEASE,
            EscrowStatus.DISPUTED,
            EscrowStatus.REFUNDED,
        ],
        EscrowStatus.DISPUTED: [EscrowStatus.RELEASED, EscrowStatus.REFUNDED],
        EscrowStatus.RELEASED: [],
        EscrowStatus.PARTIAL_RELEASE: [],
        EscrowStatus.REFUNDED: [],
    }

    # Holds that still have funds in escrow
    ACTIVE = {EscrowStatus.HELD, EscrowStatus.DISPUTED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(
                f"Escrow hold cannot move from '{status_value(from_status)}' "
                f"to '{status_value(to_status)}'",
                from_status=status_value(from_status),
                to_status=status_value(to_status),
            )
