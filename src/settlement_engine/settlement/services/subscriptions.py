"""Artist subscription records.

One row per (user_id, artist_id). Renewals extend the existing row:
valid_until only ever moves forward, so a late-arriving event for an
older billing period cannot shorten access.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import case, exists, func, select, update
from sqlalchemy.orm import Session

from settlement_engine.database import upsert_insert
from settlement_engine.models import Subscription, utcnow
from settlement_engine.settlement.types import SubscriptionStatus

logger = logging.getLogger(__name__)


class CancelResult(str, Enum):
    CANCELLED = "cancelled"
    ALREADY_INACTIVE = "already_inactive"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CancelOutcome:
    result: CancelResult
    subscription: dict[str, Any] | None = None


class SubscriptionStore:
    """Creates, renews, cancels and expires subscriptions."""

    def __init__(self, db: Session):
        self.db = db

    def upsert_active(
        self,
        *,
        user_id: str,
        artist_id: str,
        valid_until: datetime,
        gateway: str,
        transaction_id: str | None = None,
        external_subscription_id: str | None = None,
    ) -> dict[str, Any]:
        """Create the subscription or renew the existing one to active.

        On renewal valid_until becomes max(current, new).
        """
        table = Subscription.__table__
        insert_stmt = upsert_insert(self.db, table).values(
            user_id=user_id,
            artist_id=artist_id,
            status=SubscriptionStatus.ACTIVE.value,
            valid_until=valid_until,
            gateway=gateway,
            external_subscription_id=external_subscription_id,
            transaction_id=transaction_id,
        )
        excluded = insert_stmt.excluded
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=["user_id", "artist_id"],
            set_={
                "status": SubscriptionStatus.ACTIVE.value,
                "valid_until": case(
                    (table.c.valid_until < excluded.valid_until, excluded.valid_until),
                    else_=table.c.valid_until,
                ),
                "gateway": excluded.gateway,
                "external_subscription_id": func.coalesce(
                    excluded.external_subscription_id, table.c.external_subscription_id
                ),
                "transaction_id": excluded.transaction_id,
                "cancelled_at": None,
                "expired_at": None,
            },
        ).returning(*table.c)

        row = self.db.execute(stmt).one()
        subscription = dict(row._mapping)
        logger.info(
            "Subscription of user %s to artist %s active until %s",
            user_id,
            artist_id,
            subscription["valid_until"].isoformat(),
        )
        return subscription

    def cancel(
        self,
        *,
        external_subscription_id: str | None = None,
        user_id: str | None = None,
        artist_id: str | None = None,
        now: datetime | None = None,
    ) -> CancelOutcome:
        """Stop an active subscription from renewing.

        Looks the subscription up by external id when given, otherwise by
        (user_id, artist_id). valid_until is left untouched.
        """
        table = Subscription.__table__
        if external_subscription_id:
            match = table.c.external_subscription_id == external_subscription_id
        elif user_id and artist_id:
            match = (table.c.user_id == user_id) & (table.c.artist_id == artist_id)
        else:
            raise ValueError("Need external_subscription_id or both user_id and artist_id")

        stmt = (
            update(table)
            .where(match, table.c.status == SubscriptionStatus.ACTIVE.value)
            .values(status=SubscriptionStatus.CANCELLED.value, cancelled_at=now or utcnow())
            .returning(*table.c)
        )
        row = self.db.execute(stmt).first()
        if row is not None:
            return CancelOutcome(CancelResult.CANCELLED, dict(row._mapping))

        existing = self.db.execute(select(table).where(match)).first()
        if existing is None:
            return CancelOutcome(CancelResult.NOT_FOUND)
        return CancelOutcome(CancelResult.ALREADY_INACTIVE, dict(existing._mapping))

    def expire_due(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Mark every subscription whose period has ended as expired."""
        table = Subscription.__table__
        now = now or utcnow()
        stmt = (
            update(table)
            .where(
                table.c.valid_until <= now,
                table.c.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value]
                ),
            )
            .values(status=SubscriptionStatus.EXPIRED.value, expired_at=now)
            .returning(*table.c)
        )
        expired = [dict(row._mapping) for row in self.db.execute(stmt)]
        if expired:
            logger.info("Expired %d subscription(s) due at %s", len(expired), now.isoformat())
        return expired

    def get(self, user_id: str, artist_id: str) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id, Subscription.artist_id == artist_id
        )
        return self.db.scalars(stmt).first()

    def has_access(self, user_id: str, artist_id: str, now: datetime | None = None) -> bool:
        """True while the paid-for period has not ended, whatever the status."""
        stmt = select(
            exists().where(
                Subscription.user_id == user_id,
                Subscription.artist_id == artist_id,
                Subscription.valid_until > (now or utcnow()),
            )
        )
        return bool(self.db.execute(stmt).scalar())
