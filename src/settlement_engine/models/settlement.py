"""Settlement models.

Covers the durable state the settlement coordinator owns:
- Payment transactions (one row per payment attempt)
- Webhook event records (idempotency claims, never updated)
- Entitlements (active per-user grants for purchased items)
- Purchase history (append-only purchase and reversal entries)
- Subscriptions (one row per user/artist pair)
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.models.base import Base, TimestampMixin, UTCDateTime, utcnow


def _new_id() -> str:
    return uuid4().hex


class Transaction(TimestampMixin, Base):
    """One payment attempt.

    Created in `pending` by the payment-initiation flow. Status only moves
    through conditional updates issued by the settlement coordinator.
    """

    __tablename__ = "payment_transaction"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[str | None] = mapped_column(String(64))
    artist_id: Mapped[str | None] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    provider_payment_id: Mapped[str | None] = mapped_column(String(128))
    provider_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    external_subscription_id: Mapped[str | None] = mapped_column(String(128))
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    failure_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded')",
            name="payment_transaction_status_ck",
        ),
        CheckConstraint(
            "item_type IN ('song', 'album', 'artist-subscription')",
            name="payment_transaction_item_type_ck",
        ),
        CheckConstraint("amount >= 0", name="payment_transaction_amount_ck"),
        Index("payment_transaction_by_user", "user_id"),
        Index("payment_transaction_by_provider_payment", "provider", "provider_payment_id"),
    )


class WebhookEventRecord(Base):
    """Idempotency claim for one provider event id."""

    __tablename__ = "webhook_event_record"

    provider_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON)


class Entitlement(TimestampMixin, Base):
    """Active grant of a purchased song or album to a user.

    At most one row per (user_id, item_type, item_id).
    """

    __tablename__ = "entitlement"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        CheckConstraint("item_type IN ('song', 'album')", name="entitlement_item_type_ck"),
        UniqueConstraint("user_id", "item_type", "item_id", name="entitlement_user_item_uq"),
        Index("entitlement_by_payment", "payment_reference"),
    )


class PurchaseHistoryEntry(TimestampMixin, Base):
    """Append-only purchase/reversal history.

    Keyed by (payment_reference, entry_type) so a retried settlement never
    writes a second row for the same payment.
    """

    __tablename__ = "purchase_history_entry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('purchase', 'refund')", name="purchase_history_entry_type_ck"
        ),
        UniqueConstraint(
            "payment_reference", "entry_type", name="purchase_history_payment_entry_uq"
        ),
        Index("purchase_history_by_user", "user_id"),
    )


class Subscription(TimestampMixin, Base):
    """Recurring access of one user to one artist's gated content.

    Access is governed by valid_until, not by status: a cancelled
    subscription keeps access until the paid-for period ends.
    """

    __tablename__ = "artist_subscription"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    artist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    external_subscription_id: Mapped[str | None] = mapped_column(String(128))
    transaction_id: Mapped[str | None] = mapped_column(String(64))
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'cancelled', 'expired')",
            name="artist_subscription_status_ck",
        ),
        UniqueConstraint("user_id", "artist_id", name="artist_subscription_user_artist_uq"),
        Index("artist_subscription_by_external_id", "external_subscription_id"),
        Index("artist_subscription_by_valid_until", "valid_until"),
    )
