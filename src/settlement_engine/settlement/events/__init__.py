"""Settlement domain events package.

This package provides:
- Typed domain events for settlement outcomes
- Synchronous and asynchronous dispatchers for in-process fan-out
"""

from settlement_engine.settlement.events.types import (
    # Base
    DomainEvent,
    EventMetadata,
    Topic,
    # Payment Events
    PaymentSucceeded,
    PaymentFailed,
    RefundIssued,
    # Purchase Events
    PurchaseCompleted,
    PurchaseRefunded,
    # Subscription Events
    SubscriptionCreated,
    SubscriptionCancelled,
    SubscriptionExpired,
)
from settlement_engine.settlement.events.dispatcher import (
    EventDispatcher,
    AsyncEventDispatcher,
    EventHandler,
    AsyncEventHandler,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "Topic",
    # Payment Events
    "PaymentSucceeded",
    "PaymentFailed",
    "RefundIssued",
    # Purchase Events
    "PurchaseCompleted",
    "PurchaseRefunded",
    # Subscription Events
    "SubscriptionCreated",
    "SubscriptionCancelled",
    "SubscriptionExpired",
    # Dispatchers
    "EventDispatcher",
    "AsyncEventDispatcher",
    "EventHandler",
    "AsyncEventHandler",
]
