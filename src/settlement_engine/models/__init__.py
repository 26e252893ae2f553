"""SQLAlchemy ORM models for the settlement engine."""

from settlement_engine.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from settlement_engine.models.settlement import (
    Entitlement,
    PurchaseHistoryEntry,
    Subscription,
    Transaction,
    WebhookEventRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Entitlement",
    "PurchaseHistoryEntry",
    "Subscription",
    "Transaction",
    "WebhookEventRecord",
]
