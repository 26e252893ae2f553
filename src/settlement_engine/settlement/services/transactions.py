"""Payment transaction lifecycle.

Status moves forward only:
- pending → paid
- pending → failed
- paid → refunded

Every transition is a single conditional UPDATE that only matches rows in
an allowed predecessor state. Two racing settlements for the same
transaction therefore cannot both apply, and a late event can never move
a transaction backward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from settlement_engine.models import Transaction, utcnow
from settlement_engine.settlement.errors import InvalidTransitionError
from settlement_engine.settlement.types import ItemType, TransactionStatus

logger = logging.getLogger(__name__)


class TransactionStateMachine:
    """State machine for transaction status transitions."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        TransactionStatus.PENDING: [TransactionStatus.PAID, TransactionStatus.FAILED],
        TransactionStatus.PAID: [TransactionStatus.REFUNDED],
        TransactionStatus.FAILED: [],  # Terminal state
        TransactionStatus.REFUNDED: [],  # Terminal state
    }

    # Column stamped when a transaction enters the status
    TIMESTAMP_COLUMNS: dict[str, str] = {
        TransactionStatus.PAID: "paid_at",
        TransactionStatus.FAILED: "failed_at",
        TransactionStatus.REFUNDED: "refunded_at",
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def predecessors(cls, to_status: str) -> list[str]:
        """Statuses from which `to_status` may be entered."""
        return [
            TransactionStatus(s).value
            for s, allowed in cls.VALID_TRANSITIONS.items()
            if to_status in allowed
        ]

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, [])


class TransitionResult(str, Enum):
    """Outcome of a conditional status update."""

    APPLIED = "applied"
    NOT_APPLIED = "not_applied"  # row exists but was not in a predecessor state
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of TransactionStore.apply_outcome.

    `transaction` is the row as written when applied; `current_status` is
    the status that blocked the update otherwise.
    """

    result: TransitionResult
    transaction: dict[str, Any] | None = None
    current_status: str | None = None

    @property
    def applied(self) -> bool:
        return self.result == TransitionResult.APPLIED

    @property
    def found(self) -> bool:
        return self.result != TransitionResult.NOT_FOUND


class TransactionStore:
    """Reads and conditionally updates payment transactions."""

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        *,
        user_id: str,
        item_type: str,
        amount: Decimal,
        provider: str,
        currency: str = "USD",
        item_id: str | None = None,
        artist_id: str | None = None,
        provider_payment_id: str | None = None,
        external_subscription_id: str | None = None,
        transaction_id: str | None = None,
    ) -> Transaction:
        """Record a new pending transaction for a payment about to be initiated."""
        parsed = ItemType.parse(item_type)
        if parsed is None:
            raise ValueError(f"Unknown item type: {item_type}")
        if amount < 0:
            raise ValueError("Amount must not be negative")
        if parsed == ItemType.ARTIST_SUBSCRIPTION and not artist_id:
            raise ValueError("artist_id is required for artist subscriptions")
        if parsed != ItemType.ARTIST_SUBSCRIPTION and not item_id:
            raise ValueError(f"item_id is required for {parsed.value} purchases")

        transaction = Transaction(
            user_id=user_id,
            item_type=parsed.value,
            item_id=item_id,
            artist_id=artist_id,
            amount=amount,
            currency=currency,
            provider=provider,
            status=TransactionStatus.PENDING.value,
            provider_payment_id=provider_payment_id,
            external_subscription_id=external_subscription_id,
        )
        if transaction_id:
            transaction.id = transaction_id
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def get(self, transaction_id: str) -> Transaction | None:
        return self.db.get(Transaction, transaction_id)

    def current_status(self, transaction_id: str) -> str | None:
        """Status of a transaction straight from the database, or None."""
        stmt = select(Transaction.status).where(Transaction.id == transaction_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def apply_outcome(
        self,
        transaction_id: str,
        to_status: TransactionStatus,
        *,
        provider_payload: dict[str, Any] | None = None,
        provider_payment_id: str | None = None,
        failure_reason: str | None = None,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        """Move a transaction to `to_status` if it is in an allowed predecessor.

        Only matching rows are written. Nothing else about the row changes
        when the update does not apply.
        """
        table = Transaction.__table__
        now = now or utcnow()

        values: dict[str, Any] = {
            "status": to_status.value,
            TransactionStateMachine.TIMESTAMP_COLUMNS[to_status]: now,
        }
        if provider_payload is not None:
            values["provider_payload"] = provider_payload
        if provider_payment_id:
            values["provider_payment_id"] = provider_payment_id
        if to_status == TransactionStatus.FAILED:
            values["failure_reason"] = failure_reason

        stmt = (
            update(table)
            .where(
                table.c.id == transaction_id,
                table.c.status.in_(TransactionStateMachine.predecessors(to_status)),
            )
            .values(**values)
            .returning(*table.c)
        )
        row = self.db.execute(stmt).first()

        if row is not None:
            logger.info("Transaction %s moved to %s", transaction_id, to_status.value)
            return TransitionOutcome(
                result=TransitionResult.APPLIED,
                transaction=dict(row._mapping),
                current_status=to_status.value,
            )

        current = self.current_status(transaction_id)
        if current is None:
            return TransitionOutcome(result=TransitionResult.NOT_FOUND)
        return TransitionOutcome(result=TransitionResult.NOT_APPLIED, current_status=current)

    def snapshot(self, transaction_id: str) -> dict[str, Any] | None:
        """Row as a plain dict, read without the identity map."""
        table = Transaction.__table__
        row = self.db.execute(select(table).where(table.c.id == transaction_id)).first()
        return dict(row._mapping) if row is not None else None
