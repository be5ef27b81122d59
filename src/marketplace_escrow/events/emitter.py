"""In-process publisher for order, payment and escrow events.

Notifications, audit trails and the application log all hang off one
EventEmitter. Subscribers never affect the transition that produced an
event: a handler that raises is logged and the remaining handlers still
run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from marketplace_escrow.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)

EventHandler = Callable[[DomainEvent], None]


def _as_set(value: Any) -> frozenset[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(value)
    return frozenset([value])


@dataclass(frozen=True)
class Subscription:
    """A handler plus the events it wants. Empty filters mean everything."""

    handler: EventHandler
    event_types: frozenset[str] = frozenset()
    categories: frozenset[EventCategory] = frozenset()

    def accepts(self, event: DomainEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.categories and event.category not in self.categories:
            return False
        return True


@dataclass
class EventBatch:
    """Events held back while a batch is open.

    Use through ``EventEmitter.batch()``. On a clean exit the events are
    delivered in order and handler failures end up in ``errors``; if the
    block raises they are dropped.
    """

    emitter: EventEmitter
    events: list[DomainEvent] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    def add(self, event: DomainEvent) -> None:
        self.events.append(event)

    def __enter__(self) -> EventBatch:
        self.emitter._open(self)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.emitter._close(self)
        if exc_type is not None:
            logger.debug("Dropping %d batched events after %s", len(self.events), exc_type.__name__)
            self.events.clear()
            return
        for event in self.events:
            self.errors.extend(self.emitter._deliver(event))


class EventEmitter:
    """Synchronous publisher shared by the services.

        emitter = EventEmitter()
        emitter.on(OrderPaid, notify_seller)
        emitter.on_category(EventCategory.ESCROW, audit_escrow)
        emitter.on_all(log_event)
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._open_batch: EventBatch | None = None

    def on(self, event_type: type[E] | list[type[E]], handler: EventHandler) -> None:
        """Register handler for specific event type(s)."""
        names = frozenset(t.__name__ for t in _as_set(event_type))
        self._subscriptions.append(Subscription(handler, event_types=names))

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        self._subscriptions.append(Subscription(handler, categories=_as_set(category)))

    def on_all(self, handler: EventHandler) -> None:
        self._subscriptions.append(Subscription(handler))

    def off(self, handler: EventHandler) -> None:
        """Drop every subscription made with this exact handler object."""
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Publish an event, or queue it if a batch is open.

        Returns the exceptions raised by handlers (empty while batching).
        """
        if self._open_batch is not None:
            self._open_batch.add(event)
            return []
        return self._deliver(event)

    def batch(self) -> EventBatch:
        """Hold events until the block exits cleanly, e.g. around a commit."""
        return EventBatch(self)

    def _open(self, batch: EventBatch) -> None:
        if self._open_batch is not None:
            raise RuntimeError("An event batch is already open")
        self._open_batch = batch

    def _close(self, batch: EventBatch) -> None:
        if self._open_batch is batch:
            self._open_batch = None

    def _deliver(self, event: DomainEvent) -> list[Exception]:
        errors: list[Exception] = []
        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                logger.exception(
                    "Event handler %r failed on %s for %s",
                    subscription.handler,
                    event.event_type,
                    event.metadata.correlation_id,
                )
                errors.append(e)
        return errors


def log_event(event: DomainEvent) -> None:
    """Handler that writes every event to the application log."""
    logger.info(
        "%s %s",
        event.category.value,
        event.event_type,
        extra={"event": event.to_dict()},
    )
