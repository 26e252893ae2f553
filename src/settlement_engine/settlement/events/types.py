"""Domain event types published after a settlement commits.

All events are:
- Immutable (frozen dataclasses)
- Routed by topic string
- Traceable via metadata (the provider event that caused them)
- Serializable for logging and notification payloads

Events describe what already happened. Nothing that must happen for a
settlement to be correct may depend on a subscriber receiving them.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from settlement_engine.models.base import utcnow


class Topic(str, Enum):
    """Dispatcher topics."""

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    REFUND_ISSUED = "refund.issued"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    PURCHASE_COMPLETED = "purchase.completed"
    PURCHASE_REFUNDED = "purchase.refunded"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    causation_id: str | None  # provider event id, when there was one
    provider: str | None
    source_service: str = "settlement"

    @classmethod
    def create(
        cls,
        causation_id: str | None = None,
        provider: str | None = None,
        source_service: str = "settlement",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            causation_id=causation_id,
            provider=provider,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def topic(self) -> Topic:
        """Topic this event is published on."""
        raise NotImplementedError("Subclasses must define topic")

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        return _serialize_dict(asdict(self))

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentSucceeded(DomainEvent):
    """A pending transaction was confirmed paid."""

    transaction_id: str
    user_id: str
    item_type: str
    amount: Decimal
    currency: str

    @property
    def topic(self) -> Topic:
        return Topic.PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """A pending transaction was declined or errored at the provider."""

    transaction_id: str
    user_id: str
    reason: str | None

    @property
    def topic(self) -> Topic:
        return Topic.PAYMENT_FAILED


@dataclass(frozen=True)
class RefundIssued(DomainEvent):
    """The provider confirmed a refund of a paid transaction."""

    transaction_id: str
    user_id: str
    amount: Decimal
    currency: str

    @property
    def topic(self) -> Topic:
        return Topic.REFUND_ISSUED


# =============================================================================
# Purchase Events
# =============================================================================


@dataclass(frozen=True)
class PurchaseCompleted(DomainEvent):
    """A song or album was granted to a user."""

    user_id: str
    item_type: str
    item_id: str
    transaction_id: str
    price: Decimal

    @property
    def topic(self) -> Topic:
        return Topic.PURCHASE_COMPLETED


@dataclass(frozen=True)
class PurchaseRefunded(DomainEvent):
    """A song or album grant was withdrawn after a refund."""

    user_id: str
    item_type: str
    item_id: str
    transaction_id: str

    @property
    def topic(self) -> Topic:
        return Topic.PURCHASE_REFUNDED


# =============================================================================
# Subscription Events
# =============================================================================


@dataclass(frozen=True)
class SubscriptionCreated(DomainEvent):
    """A subscription was created or renewed to active."""

    user_id: str
    artist_id: str
    valid_until: datetime
    transaction_id: str
    gateway: str

    @property
    def topic(self) -> Topic:
        return Topic.SUBSCRIPTION_CREATED


@dataclass(frozen=True)
class SubscriptionCancelled(DomainEvent):
    """A subscription stopped renewing. Access runs until valid_until."""

    user_id: str
    artist_id: str
    valid_until: datetime
    external_subscription_id: str | None

    @property
    def topic(self) -> Topic:
        return Topic.SUBSCRIPTION_CANCELLED


@dataclass(frozen=True)
class SubscriptionExpired(DomainEvent):
    """A subscription's paid-for period ended."""

    user_id: str
    artist_id: str
    valid_until: datetime

    @property
    def topic(self) -> Topic:
        return Topic.SUBSCRIPTION_EXPIRED
