"""Song and album entitlements.

Grants and purchase history are written with ON CONFLICT DO NOTHING so a
settlement that is retried after a partial failure, or a second payment
for an item the user already owns, never produces duplicate rows.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import delete, exists, select
from sqlalchemy.orm import Session, aliased

from settlement_engine.database import upsert_insert
from settlement_engine.models import Entitlement, PurchaseHistoryEntry
from settlement_engine.settlement.types import AlbumPurchase, SongPurchase

logger = logging.getLogger(__name__)

ItemPurchase = SongPurchase | AlbumPurchase


class EntitlementStore:
    """Per-user grants of purchased items plus their history."""

    def __init__(self, db: Session):
        self.db = db

    def grant(
        self,
        *,
        user_id: str,
        purchase: ItemPurchase,
        price: Decimal,
        payment_reference: str,
        provider: str,
    ) -> bool:
        """Grant an item and record the purchase.

        Returns True if a new grant row was written, False if the user
        already held the item.
        """
        table = Entitlement.__table__
        stmt = (
            upsert_insert(self.db, table)
            .values(
                user_id=user_id,
                item_type=purchase.item_type.value,
                item_id=purchase.item_id,
                price=price,
                payment_reference=payment_reference,
                provider=provider,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "item_type", "item_id"])
            .returning(table.c.id)
        )
        created = self.db.execute(stmt).first() is not None
        if not created:
            logger.info(
                "User %s already holds %s %s, grant for %s is a no-op",
                user_id,
                purchase.item_type.value,
                purchase.item_id,
                payment_reference,
            )

        self._record_history(
            entry_type="purchase",
            user_id=user_id,
            purchase=purchase,
            price=price,
            payment_reference=payment_reference,
            provider=provider,
        )
        return created

    def revoke(
        self,
        *,
        user_id: str,
        purchase: ItemPurchase,
        price: Decimal,
        payment_reference: str,
        provider: str,
    ) -> bool:
        """Withdraw the grant made by a refunded payment and record the reversal.

        Only the grant written by `payment_reference` is removed. If another
        unrefunded purchase of the same item exists, the grant is handed over
        to it and the user keeps the item. Returns True if the grant row of
        this payment was deleted.
        """
        stmt = delete(Entitlement).where(
            Entitlement.user_id == user_id,
            Entitlement.item_type == purchase.item_type.value,
            Entitlement.item_id == purchase.item_id,
            Entitlement.payment_reference == payment_reference,
        )
        removed = self.db.execute(stmt).rowcount > 0
        if not removed:
            logger.warning(
                "No grant of %s %s for user %s was made by %s, nothing to revoke",
                purchase.item_type.value,
                purchase.item_id,
                user_id,
                payment_reference,
            )

        self._record_history(
            entry_type="refund",
            user_id=user_id,
            purchase=purchase,
            price=price,
            payment_reference=payment_reference,
            provider=provider,
        )
        if removed:
            self._regrant_from_surviving_purchase(user_id, purchase, payment_reference)
        return removed

    def _regrant_from_surviving_purchase(
        self, user_id: str, purchase: ItemPurchase, refunded_reference: str
    ) -> None:
        history = PurchaseHistoryEntry
        refund = aliased(PurchaseHistoryEntry)
        stmt = (
            select(history)
            .where(
                history.user_id == user_id,
                history.entry_type == "purchase",
                history.item_type == purchase.item_type.value,
                history.item_id == purchase.item_id,
                history.payment_reference != refunded_reference,
                ~exists().where(
                    refund.payment_reference == history.payment_reference,
                    refund.entry_type == "refund",
                ),
            )
            .order_by(history.created_at, history.id)
            .limit(1)
        )
        surviving = self.db.scalars(stmt).first()
        if surviving is None:
            return

        table = Entitlement.__table__
        self.db.execute(
            upsert_insert(self.db, table)
            .values(
                user_id=user_id,
                item_type=purchase.item_type.value,
                item_id=purchase.item_id,
                price=surviving.price,
                payment_reference=surviving.payment_reference,
                provider=surviving.provider,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "item_type", "item_id"])
        )
        logger.info(
            "Grant of %s %s for user %s moved from refunded %s to %s",
            purchase.item_type.value,
            purchase.item_id,
            user_id,
            refunded_reference,
            surviving.payment_reference,
        )

    def _record_history(
        self,
        *,
        entry_type: str,
        user_id: str,
        purchase: ItemPurchase,
        price: Decimal,
        payment_reference: str,
        provider: str,
    ) -> None:
        table = PurchaseHistoryEntry.__table__
        stmt = (
            upsert_insert(self.db, table)
            .values(
                user_id=user_id,
                entry_type=entry_type,
                item_type=purchase.item_type.value,
                item_id=purchase.item_id,
                price=price,
                payment_reference=payment_reference,
                provider=provider,
            )
            .on_conflict_do_nothing(index_elements=["payment_reference", "entry_type"])
        )
        self.db.execute(stmt)

    def has_entitlement(self, user_id: str, item_type: str, item_id: str) -> bool:
        stmt = select(
            exists().where(
                Entitlement.user_id == user_id,
                Entitlement.item_type == item_type,
                Entitlement.item_id == item_id,
            )
        )
        return bool(self.db.execute(stmt).scalar())

    def list_for_user(self, user_id: str) -> list[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(Entitlement.user_id == user_id)
            .order_by(Entitlement.created_at, Entitlement.id)
        )
        return list(self.db.scalars(stmt))

    def history_for_user(self, user_id: str) -> list[PurchaseHistoryEntry]:
        """Purchase and refund entries, oldest first."""
        stmt = (
            select(PurchaseHistoryEntry)
            .where(PurchaseHistoryEntry.user_id == user_id)
            .order_by(PurchaseHistoryEntry.created_at, PurchaseHistoryEntry.id)
        )
        return list(self.db.scalars(stmt))
