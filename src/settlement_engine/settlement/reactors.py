"""Downstream reactors subscribed to settlement events.

Reactors run after commit and only observe: audit logging and user
notifications. Delivery of notifications is a collaborator behind the
Notifier protocol; the default implementation just logs.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from settlement_engine.settlement.events import (
    DomainEvent,
    EventDispatcher,
    PaymentFailed,
    PurchaseCompleted,
    PurchaseRefunded,
    SubscriptionCancelled,
    SubscriptionCreated,
    Topic,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("settlement_engine.audit")


class Notifier(Protocol):
    """Sends a templated notification to a user."""

    def notify(self, user_id: str, template: str, context: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that records notifications in the log instead of sending them."""

    def notify(self, user_id: str, template: str, context: dict[str, Any]) -> None:
        logger.info("Notify user %s with %s: %s", user_id, template, context)


def audit_log(event: DomainEvent) -> None:
    """Write every settlement event to the audit log as JSON."""
    audit_logger.info("%s %s", event.topic.value, event.to_json())


class NotificationReactor:
    """Maps settlement events to user notifications."""

    TEMPLATES: dict[Topic, str] = {
        Topic.PURCHASE_COMPLETED: "purchase_receipt",
        Topic.PURCHASE_REFUNDED: "purchase_refunded",
        Topic.SUBSCRIPTION_CREATED: "subscription_active",
        Topic.SUBSCRIPTION_CANCELLED: "subscription_cancelled",
        Topic.PAYMENT_FAILED: "payment_failed",
    }

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def __call__(self, event: DomainEvent) -> None:
        template = self.TEMPLATES.get(event.topic)
        if template is None:
            return
        user_id = getattr(event, "user_id", None)
        if user_id is None:
            return
        self.notifier.notify(user_id, template, self._context(event))

    def _context(self, event: DomainEvent) -> dict[str, Any]:
        if isinstance(event, (PurchaseCompleted, PurchaseRefunded)):
            return {
                "item_type": event.item_type,
                "item_id": event.item_id,
                "transaction_id": event.transaction_id,
            }
        if isinstance(event, (SubscriptionCreated, SubscriptionCancelled)):
            return {
                "artist_id": event.artist_id,
                "valid_until": event.valid_until.isoformat(),
            }
        if isinstance(event, PaymentFailed):
            return {"transaction_id": event.transaction_id, "reason": event.reason}
        return {}


def register_reactors(dispatcher: EventDispatcher, notifier: Notifier | None = None) -> None:
    """Subscribe the audit log and notification reactors."""
    dispatcher.subscribe_all(audit_log)
    reactor = NotificationReactor(notifier or LoggingNotifier())
    dispatcher.subscribe(list(NotificationReactor.TEMPLATES), reactor)
