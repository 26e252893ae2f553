"""Normalized settlement types.

Provider adapters translate every inbound webhook into a SettlementEvent.
The coordinator only ever sees these types, never provider payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from settlement_engine.settlement.errors import MissingRequiredField


class EventKind(str, Enum):
    """Normalized provider event kinds."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REFUND_ISSUED = "refund_issued"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    UNHANDLED = "unhandled"


class ItemType(str, Enum):
    """What a transaction paid for."""

    SONG = "song"
    ALBUM = "album"
    ARTIST_SUBSCRIPTION = "artist-subscription"

    @classmethod
    def parse(cls, value: str | None) -> ItemType | None:
        """Parse a stored or provider-supplied item type; None if unknown."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class TransactionStatus(str, Enum):
    """Transaction lifecycle states."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    """Subscription record states."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PaymentMetadata:
    """Platform metadata attached at payment initiation and echoed back."""

    item_type: str | None = None
    item_id: str | None = None
    artist_id: str | None = None
    period_end: datetime | None = None
    external_subscription_id: str | None = None


@dataclass(frozen=True)
class SettlementEvent:
    """Provider-agnostic webhook event."""

    provider: str
    kind: EventKind
    provider_event_id: str | None = None
    transaction_id: str | None = None
    user_id: str | None = None
    provider_payment_id: str | None = None
    failure_reason: str | None = None
    metadata: PaymentMetadata = field(default_factory=PaymentMetadata)
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def require_transaction_id(self) -> str:
        """Return the transaction id or raise MissingRequiredField."""
        if not self.transaction_id:
            raise MissingRequiredField(
                "transactionId",
                f"{self.provider} {self.kind.value} event {self.provider_event_id or '<no id>'}",
            )
        return self.transaction_id


# =============================================================================
# Entitlement variants
# =============================================================================


@dataclass(frozen=True)
class SongPurchase:
    """Permanent grant of one song."""

    item_id: str

    @property
    def item_type(self) -> ItemType:
        return ItemType.SONG


@dataclass(frozen=True)
class AlbumPurchase:
    """Permanent grant of one album."""

    item_id: str

    @property
    def item_type(self) -> ItemType:
        return ItemType.ALBUM


@dataclass(frozen=True)
class ArtistSubscriptionGrant:
    """Time-bounded access to one artist."""

    artist_id: str
    valid_until: datetime
    external_subscription_id: str | None = None

    @property
    def item_type(self) -> ItemType:
        return ItemType.ARTIST_SUBSCRIPTION


Grant = Union[SongPurchase, AlbumPurchase, ArtistSubscriptionGrant]


# =============================================================================
# Results
# =============================================================================


class SettlementStatus(str, Enum):
    """Outcome of one settle() call."""

    SETTLED = "settled"
    ALREADY_PROCESSED = "already_processed"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SettlementResult:
    """Result of settling one normalized event.

    `transaction` is a detached snapshot (dict) of the row after commit,
    when the event touched a transaction.
    """

    status: SettlementStatus
    kind: EventKind
    transaction: dict[str, Any] | None = None
    subscription: dict[str, Any] | None = None
    current_status: str | None = None
    published: tuple[str, ...] = ()

    @property
    def applied(self) -> bool:
        return self.status == SettlementStatus.SETTLED
