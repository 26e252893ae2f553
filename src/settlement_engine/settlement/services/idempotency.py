"""Idempotency ledger for inbound webhook events.

One row per provider event id. A claim is an INSERT ... ON CONFLICT DO
NOTHING issued inside the caller's unit of work, so:
- a claim that is rolled back never happened
- a concurrent second claim on the same id waits for the first to commit
  or roll back, then sees the outcome

Rows are never updated or deleted.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.database import upsert_insert
from settlement_engine.models import WebhookEventRecord
from settlement_engine.settlement.errors import StorageError

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    """Outcome of claiming a provider event id."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    BYPASSED = "bypassed"  # event carried no id; nothing to deduplicate on


class IdempotencyLedger:
    """Records which provider events have been processed."""

    def __init__(self, db: Session):
        self.db = db

    def claim(
        self,
        *,
        provider_event_id: str | None,
        provider: str,
        event_kind: str,
        raw_payload: dict[str, Any] | None = None,
    ) -> ClaimResult:
        """Claim a provider event id for processing.

        Returns:
            CLAIMED if this call inserted the record, ALREADY_CLAIMED if a
            committed (or concurrently committing) record exists, BYPASSED
            when there is no id.

        Raises:
            StorageError: the ledger could not be read or written.
        """
        if not provider_event_id:
            logger.debug("%s %s event has no id, idempotency bypassed", provider, event_kind)
            return ClaimResult.BYPASSED

        table = WebhookEventRecord.__table__
        stmt = (
            upsert_insert(self.db, table)
            .values(
                provider_event_id=provider_event_id,
                provider=provider,
                event_kind=event_kind,
                raw_payload=raw_payload,
            )
            .on_conflict_do_nothing(index_elements=["provider_event_id"])
            .returning(table.c.provider_event_id)
        )

        try:
            row = self.db.execute(stmt).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Idempotency claim failed for {provider_event_id}: {e}") from e

        if row is None:
            return ClaimResult.ALREADY_CLAIMED
        return ClaimResult.CLAIMED

    def get(self, provider_event_id: str) -> WebhookEventRecord | None:
        """Look up a processed event record."""
        return self.db.get(WebhookEventRecord, provider_event_id)

    def recent(self, limit: int = 20) -> list[WebhookEventRecord]:
        """Most recently received event records, newest first."""
        stmt = (
            select(WebhookEventRecord)
            .order_by(WebhookEventRecord.received_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))
