"""In-process event dispatcher for settlement outcomes.

The dispatcher provides:
- Topic-based subscription (or all topics)
- Sequential fan-out in registration order
- Error isolation (a failing subscriber never stops the next one and
  never reaches the publisher)

It is constructed once per process and passed explicitly to the
coordinator and to reactor registration.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Union, runtime_checkable

from settlement_engine.settlement.events.types import DomainEvent, Topic

logger = logging.getLogger(__name__)


@runtime_checkable
class EventHandler(Protocol):
    """Protocol for synchronous subscribers."""

    def __call__(self, event: DomainEvent) -> None:
        """Handle a domain event."""
        ...


@runtime_checkable
class AsyncEventHandler(Protocol):
    """Protocol for asynchronous subscribers."""

    async def __call__(self, event: DomainEvent) -> None:
        """Handle a domain event asynchronously."""
        ...


AnyHandler = Union[EventHandler, AsyncEventHandler, Callable[[DomainEvent], Any]]


@dataclass
class HandlerRegistration:
    """Registration of one subscriber."""

    handler: AnyHandler
    topics: set[str] | None  # None = all topics


def _topic_names(topic: Topic | str | list[Topic | str]) -> set[str]:
    if isinstance(topic, list):
        return {Topic(t).value for t in topic}
    return {Topic(topic).value}


def _handler_name(handler: Any) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class _Registry:
    def __init__(self) -> None:
        self._subscriptions: list[HandlerRegistration] = []

    def subscribe(self, topic: Topic | str | list[Topic | str], handler: AnyHandler) -> None:
        """Register handler for specific topic(s)."""
        self._subscriptions.append(HandlerRegistration(handler=handler, topics=_topic_names(topic)))

    def subscribe_all(self, handler: AnyHandler) -> None:
        """Register handler for every topic."""
        self._subscriptions.append(HandlerRegistration(handler=handler, topics=None))

    def unsubscribe(self, handler: AnyHandler) -> None:
        """Remove every registration of a handler."""
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]

    def subscribers(self, topic: str) -> list[AnyHandler]:
        """Handlers registered for a topic, in registration order."""
        return [
            s.handler
            for s in self._subscriptions
            if s.topics is None or topic in s.topics
        ]


class EventDispatcher(_Registry):
    """Synchronous dispatcher.

    Usage:
        dispatcher = EventDispatcher()
        dispatcher.subscribe(Topic.PURCHASE_COMPLETED, send_receipt)
        dispatcher.subscribe_all(audit_log)

        errors = dispatcher.publish(purchase_completed_event)
    """

    def publish(self, event: DomainEvent) -> list[Exception]:
        """Deliver an event to every subscriber of its topic.

        Returns the exceptions raised by subscribers; they are logged here
        and never re-raised.
        """
        topic = event.topic.value
        errors: list[Exception] = []

        for handler in self.subscribers(topic):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    # Coroutine subscribers belong on AsyncEventDispatcher
                    close = getattr(result, "close", None)
                    if close is not None:
                        close()
                    raise TypeError(
                        f"Async subscriber {_handler_name(handler)} registered on sync dispatcher"
                    )
            except Exception as e:
                logger.exception(
                    "Subscriber %s failed for topic %s",
                    _handler_name(handler),
                    topic,
                )
                errors.append(e)

        return errors

    def publish_all(self, events: list[DomainEvent]) -> list[Exception]:
        """Publish several events in order."""
        errors: list[Exception] = []
        for event in events:
            errors.extend(self.publish(event))
        return errors


class AsyncEventDispatcher(_Registry):
    """Asynchronous dispatcher.

    Subscribers may be coroutine functions or plain callables. Each is
    awaited before the next one on the same topic runs.

    Usage:
        dispatcher = AsyncEventDispatcher()

        async def send_receipt(event: PurchaseCompleted) -> None:
            await mailer.send(...)

        dispatcher.subscribe(Topic.PURCHASE_COMPLETED, send_receipt)
        await dispatcher.publish(event)
    """

    async def publish(self, event: DomainEvent) -> list[Exception]:
        """Deliver an event to every subscriber of its topic, sequentially."""
        topic = event.topic.value
        errors: list[Exception] = []

        for handler in self.subscribers(topic):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(
                    "Async subscriber %s failed for topic %s",
                    _handler_name(handler),
                    topic,
                )
                errors.append(e)

        return errors

    async def publish_all(self, events: list[DomainEvent]) -> list[Exception]:
        """Publish several events in order."""
        errors: list[Exception] = []
        for event in events:
            errors.extend(await self.publish(event))
        return errors

