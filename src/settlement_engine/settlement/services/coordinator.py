"""Settlement coordinator.

Applies one normalized provider event as a single atomic unit of work:

1. Claim the provider event id in the idempotency ledger
2. Conditionally move the transaction to its new status
3. Grant/revoke entitlements or create/renew/cancel the subscription

All three commit together or not at all. A rolled-back unit of work
leaves no ledger claim behind, so the provider's redelivery gets a clean
retry. Domain events are published only after commit; a failing
subscriber can never undo or block a settlement.

Recurring subscription charges reference the subscription's first
transaction. A PaymentSucceeded for an already-paid subscription
transaction that carries a later period end renews the subscription
instead of being reported as a duplicate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.models import utcnow
from settlement_engine.settlement.errors import (
    MissingRequiredField,
    SettlementError,
    SettlementTimeout,
    StorageError,
)
from settlement_engine.settlement.events import (
    DomainEvent,
    EventDispatcher,
    EventMetadata,
    PaymentFailed,
    PaymentSucceeded,
    PurchaseCompleted,
    PurchaseRefunded,
    RefundIssued,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionExpired,
)
from settlement_engine.settlement.services.entitlements import EntitlementStore
from settlement_engine.settlement.services.idempotency import ClaimResult, IdempotencyLedger
from settlement_engine.settlement.services.subscriptions import CancelResult, SubscriptionStore
from settlement_engine.settlement.services.transactions import (
    TransactionStore,
    TransitionOutcome,
    TransitionResult,
)
from settlement_engine.settlement.types import (
    AlbumPurchase,
    ArtistSubscriptionGrant,
    EventKind,
    Grant,
    ItemType,
    SettlementEvent,
    SettlementResult,
    SettlementStatus,
    SongPurchase,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


class _Deadline:
    """Wall-clock budget for one unit of work."""

    def __init__(self, limit_seconds: float):
        self.limit = limit_seconds
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def check(self, step: str) -> None:
        if self.elapsed > self.limit:
            logger.error("Settlement exceeded %.2fs after %s, rolling back", self.limit, step)
            raise SettlementTimeout(self.elapsed, self.limit)


class SettlementCoordinator:
    """Settles normalized provider events against the durable store.

    Usage:
        coordinator = SettlementCoordinator(session_factory, dispatcher)
        result = coordinator.settle(event)
        if result.status == SettlementStatus.ALREADY_PROCESSED:
            ...  # duplicate delivery, still acknowledged

    Raises MissingRequiredField for payloads that cannot be settled and
    StorageError (including SettlementTimeout) for retryable failures.
    Everything else, including duplicates and anomalies, is a result.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        dispatcher: EventDispatcher,
        *,
        default_subscription_period: timedelta = timedelta(days=30),
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._default_subscription_period = default_subscription_period
        self._timeout_seconds = timeout_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def settle(self, event: SettlementEvent) -> SettlementResult:
        """Apply one provider event exactly once."""
        if event.kind == EventKind.UNHANDLED:
            logger.info(
                "Acknowledging unhandled %s event %s", event.provider, event.provider_event_id
            )
            return SettlementResult(status=SettlementStatus.IGNORED, kind=event.kind)

        self._check_required_fields(event)

        pending: list[DomainEvent] = []
        result = self._run_unit_of_work(
            lambda session, deadline: self._settle_in_scope(session, event, deadline, pending),
            description=f"{event.provider} {event.kind.value} event {event.provider_event_id}",
        )
        return self._publish(result, pending)

    def expire_subscriptions(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Expire every subscription whose period has ended and announce each."""
        now = now or self._clock()

        def sweep(session: Session, deadline: _Deadline) -> list[dict[str, Any]]:
            expired = SubscriptionStore(session).expire_due(now)
            deadline.check("expiry sweep")
            return expired

        expired = self._run_unit_of_work(sweep, description="subscription expiry sweep")
        self._dispatcher.publish_all(
            [
                SubscriptionExpired(
                    metadata=EventMetadata.create(provider=row["gateway"]),
                    user_id=row["user_id"],
                    artist_id=row["artist_id"],
                    valid_until=row["valid_until"],
                )
                for row in expired
            ]
        )
        return expired

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _run_unit_of_work(self, work: Callable[[Session, _Deadline], Any], *, description: str) -> Any:
        deadline = _Deadline(self._timeout_seconds)
        try:
            with self._session_factory() as session, session.begin():
                self._apply_statement_timeout(session)
                return work(session, deadline)
        except SettlementError:
            raise
        except SQLAlchemyError as e:
            logger.error("Storage failure settling %s, retryable: %s", description, e)
            raise StorageError(f"Storage failure settling {description}: {e}") from e

    def _apply_statement_timeout(self, session: Session) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        session.execute(
            text("SELECT set_config('statement_timeout', :value, true)"),
            {"value": str(int(self._timeout_seconds * 1000))},
        )

    def _publish(self, result: SettlementResult, events: list[DomainEvent]) -> SettlementResult:
        if not events:
            return result
        self._dispatcher.publish_all(events)
        return replace(result, published=tuple(e.topic.value for e in events))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _check_required_fields(self, event: SettlementEvent) -> None:
        """Reject payloads that can never be settled, before any claim."""
        if event.kind == EventKind.SUBSCRIPTION_CANCELLED:
            if event.metadata.external_subscription_id:
                return
            if event.user_id and event.metadata.artist_id:
                return
            raise MissingRequiredField(
                "externalSubscriptionId",
                f"{event.provider} cancellation {event.provider_event_id} names no subscription",
            )
        event.require_transaction_id()

    def _settle_in_scope(
        self,
        session: Session,
        event: SettlementEvent,
        deadline: _Deadline,
        pending: list[DomainEvent],
    ) -> SettlementResult:
        claim = IdempotencyLedger(session).claim(
            provider_event_id=event.provider_event_id,
            provider=event.provider,
            event_kind=event.kind.value,
            raw_payload=event.raw_payload,
        )
        if claim == ClaimResult.ALREADY_CLAIMED:
            logger.info(
                "Duplicate %s event %s, already processed", event.provider, event.provider_event_id
            )
            return SettlementResult(status=SettlementStatus.ALREADY_PROCESSED, kind=event.kind)
        deadline.check("idempotency claim")

        now = self._clock()
        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            return self._payment_succeeded(session, event, now, deadline, pending)
        if event.kind == EventKind.PAYMENT_FAILED:
            return self._payment_failed(session, event, now, deadline, pending)
        if event.kind == EventKind.REFUND_ISSUED:
            return self._refund_issued(session, event, now, deadline, pending)
        return self._subscription_cancelled(session, event, now, deadline, pending)

    def _payment_succeeded(
        self,
        session: Session,
        event: SettlementEvent,
        now: datetime,
        deadline: _Deadline,
        pending: list[DomainEvent],
    ) -> SettlementResult:
        outcome = TransactionStore(session).apply_outcome(
            event.require_transaction_id(),
            TransactionStatus.PAID,
            provider_payload=event.raw_payload,
            provider_payment_id=event.provider_payment_id,
            now=now,
        )
        if not outcome.applied:
            if outcome.current_status == TransactionStatus.PAID.value:
                renewal = self._renew_subscription(session, event, now, deadline, pending)
                if renewal is not None:
                    return renewal
            return self._not_applied(event, outcome, TransactionStatus.PAID)
        deadline.check("transaction update")

        transaction = outcome.transaction
        user_id = self._authoritative_user(event, transaction)
        grant = self._resolve_grant(event, transaction, now)
        metadata = self._event_metadata(event)

        pending.append(
            PaymentSucceeded(
                metadata=metadata,
                transaction_id=transaction["id"],
                user_id=user_id,
                item_type=grant.item_type.value,
                amount=transaction["amount"],
                currency=transaction["currency"],
            )
        )

        subscription = None
        if isinstance(grant, ArtistSubscriptionGrant):
            subscription = self._activate_subscription(
                session, transaction, user_id, grant, metadata, pending
            )
        else:
            EntitlementStore(session).grant(
                user_id=user_id,
                purchase=grant,
                price=transaction["amount"],
                payment_reference=transaction["id"],
                provider=transaction["provider"],
            )
            pending.append(
                PurchaseCompleted(
                    metadata=metadata,
                    user_id=user_id,
                    item_type=grant.item_type.value,
                    item_id=grant.item_id,
                    transaction_id=transaction["id"],
                    price=transaction["amount"],
                )
            )
        deadline.check("entitlement update")

        logger.info(
            "Settled %s payment for transaction %s (%s)",
            event.provider,
            transaction["id"],
            grant.item_type.value,
        )
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            kind=event.kind,
            transaction=transaction,
            subscription=subscription,
            current_status=TransactionStatus.PAID.value,
        )

    def _payment_failed(
        self,
        session: Session,
        event: SettlementEvent,
        now: datetime,
        deadline: _Deadline,
        pending: list[DomainEvent],
    ) -> SettlementResult:
        outcome = TransactionStore(session).apply_outcome(
            event.require_transaction_id(),
            TransactionStatus.FAILED,
            provider_payload=event.raw_payload,
            provider_payment_id=event.provider_payment_id,
            failure_reason=event.failure_reason,
            now=now,
        )
        if not outcome.applied:
            return self._not_applied(event, outcome, TransactionStatus.FAILED)
        deadline.check("transaction update")

        transaction = outcome.transaction
        pending.append(
            PaymentFailed(
                metadata=self._event_metadata(event),
                transaction_id=transaction["id"],
                user_id=self._authoritative_user(event, transaction),
                reason=event.failure_reason,
            )
        )
        logger.info(
            "Transaction %s failed at %s: %s",
            transaction["id"],
            event.provider,
            event.failure_reason or "no reason given",
        )
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            kind=event.kind,
            transaction=transaction,
            current_status=TransactionStatus.FAILED.value,
        )

    def _refund_issued(
        self,
        session: Session,
        event: SettlementEvent,
        now: datetime,
        deadline: _Deadline,
        pending: list[DomainEvent],
    ) -> SettlementResult:
        outcome = TransactionStore(session).apply_outcome(
            event.require_transaction_id(),
            TransactionStatus.REFUNDED,
            provider_payload=event.raw_payload,
            now=now,
        )
        if not outcome.applied:
            return self._not_applied(event, outcome, TransactionStatus.REFUNDED)
        deadline.check("transaction update")

        transaction = outcome.transaction
        user_id = self._authoritative_user(event, transaction)
        metadata = self._event_metadata(event)
        pending.append(
            RefundIssued(
                metadata=metadata,
                transaction_id=transaction["id"],
                user_id=user_id,
                amount=transaction["amount"],
                currency=transaction["currency"],
            )
        )

        item_type = ItemType.parse(transaction["item_type"]) or ItemType.parse(
            event.metadata.item_type
        )
        item_id = transaction["item_id"] or event.metadata.item_id
        if item_type in (ItemType.SONG, ItemType.ALBUM) and item_id:
            purchase = SongPurchase(item_id) if item_type == ItemType.SONG else AlbumPurchase(item_id)
            EntitlementStore(session).revoke(
                user_id=user_id,
                purchase=purchase,
                price=transaction["amount"],
                payment_reference=transaction["id"],
                provider=transaction["provider"],
            )
            pending.append(
                PurchaseRefunded(
                    metadata=metadata,
                    user_id=user_id,
                    item_type=item_type.value,
                    item_id=item_id,
                    transaction_id=transaction["id"],
                )
            )
            deadline.check("entitlement update")

        logger.info("Refund of transaction %s settled", transaction["id"])
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            kind=event.kind,
            transaction=transaction,
            current_status=TransactionStatus.REFUNDED.value,
        )

    def _subscription_cancelled(
        self,
        session: Session,
        event: SettlementEvent,
        now: datetime,
        deadline: _Deadline,
        pending: list[DomainEvent],
    ) -> SettlementResult:
        outcome = SubscriptionStore(session).cancel(
            external_subscription_id=event.metadata.external_subscription_id,
            user_id=event.user_id,
            artist_id=event.metadata.artist_id,
            now=now,
        )
        deadline.check("subscription update")

        if outcome.result == CancelResult.NOT_FOUND:
            logger.error(
                "Cancellation %s from %s matches no subscription (external id %s)",
                event.provider_event_id,
                event.provider,
                event.metadata.external_subscription_id,
            )
            return SettlementResult(status=SettlementStatus.NOT_FOUND, kind=event.kind)

        subscription = outcome.subscription
        if outcome.result == CancelResult.ALREADY_INACTIVE:
            logger.info(
                "Subscription %s already %s, cancellation %s has no effect",
                subscription["id"],
                subscription["status"],
                event.provider_event_id,
            )
            return SettlementResult(
                status=SettlementStatus.ALREADY_PROCESSED,
                kind=event.kind,
                subscription=subscription,
                current_status=subscription["status"],
            )

        pending.append(
            SubscriptionCancelled(
                metadata=self._event_metadata(event),
                user_id=subscription["user_id"],
                artist_id=subscription["artist_id"],
                valid_until=subscription["valid_until"],
                external_subscription_id=subscription["external_subscription_id"],
            )
        )
        logger.info(
            "Subscription of user %s to artist %s cancelled, access until %s",
            subscription["user_id"],
            subscription["artist_id"],
            subscription["valid_until"].isoformat(),
        )
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            kind=event.kind,
            subscription=subscription,
            current_status=subscription["status"],
        )

    def _renew_subscription(
        self,
        session: Session,
        event: SettlementEvent,
        now: datetime,
        deadline: _Deadline,
        pending: list[DomainEvent],
    ) -> SettlementResult | None:
        """Extend a subscription charged for a later billing period.

        Recurring charges echo the metadata of the subscription's first
        transaction, which is already paid. Returns None when the event
        carries nothing new, so the caller reports a duplicate.
        """
        transaction = TransactionStore(session).snapshot(event.require_transaction_id())
        if ItemType.parse(transaction["item_type"]) != ItemType.ARTIST_SUBSCRIPTION:
            return None
        if event.metadata.period_end is None and not event.provider_event_id:
            # Without an event id or a period there is no telling a new cycle from a retry
            return None

        user_id = self._authoritative_user(event, transaction)
        grant = self._resolve_grant(event, transaction, now)
        if not isinstance(grant, ArtistSubscriptionGrant):
            return None

        current = SubscriptionStore(session).get(user_id, grant.artist_id)
        if current is not None and grant.valid_until <= current.valid_until:
            return None

        metadata = self._event_metadata(event)
        pending.append(
            PaymentSucceeded(
                metadata=metadata,
                transaction_id=transaction["id"],
                user_id=user_id,
                item_type=grant.item_type.value,
                amount=transaction["amount"],
                currency=transaction["currency"],
            )
        )
        subscription = self._activate_subscription(
            session, transaction, user_id, grant, metadata, pending
        )
        deadline.check("subscription renewal")

        logger.info(
            "Renewed subscription of user %s to artist %s from %s event %s",
            user_id,
            grant.artist_id,
            event.provider,
            event.provider_event_id,
        )
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            kind=event.kind,
            transaction=transaction,
            subscription=subscription,
            current_status=TransactionStatus.PAID.value,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _activate_subscription(
        self,
        session: Session,
        transaction: dict[str, Any],
        user_id: str,
        grant: ArtistSubscriptionGrant,
        metadata: EventMetadata,
        pending: list[DomainEvent],
    ) -> dict[str, Any]:
        subscription = SubscriptionStore(session).upsert_active(
            user_id=user_id,
            artist_id=grant.artist_id,
            valid_until=grant.valid_until,
            gateway=transaction["provider"],
            transaction_id=transaction["id"],
            external_subscription_id=grant.external_subscription_id,
        )
        pending.append(
            SubscriptionCreated(
                metadata=metadata,
                user_id=user_id,
                artist_id=grant.artist_id,
                valid_until=subscription["valid_until"],
                transaction_id=transaction["id"],
                gateway=transaction["provider"],
            )
        )
        return subscription

    def _not_applied(
        self,
        event: SettlementEvent,
        outcome: TransitionOutcome,
        target: TransactionStatus,
    ) -> SettlementResult:
        """Result for a transition that matched no row in a predecessor state.

        The idempotency claim still commits, so redeliveries short-circuit.
        """
        if outcome.result == TransitionResult.NOT_FOUND:
            logger.error(
                "Transaction %s from %s event %s not found; provider reports a payment "
                "the platform has no record of",
                event.transaction_id,
                event.provider,
                event.provider_event_id,
            )
            return SettlementResult(status=SettlementStatus.NOT_FOUND, kind=event.kind)

        if outcome.current_status == target.value:
            logger.info(
                "Transaction %s already %s, %s event %s is a duplicate",
                event.transaction_id,
                target.value,
                event.provider,
                event.provider_event_id,
            )
            return SettlementResult(
                status=SettlementStatus.ALREADY_PROCESSED,
                kind=event.kind,
                current_status=outcome.current_status,
            )

        logger.warning(
            "Anomaly: %s event %s wants transaction %s %s but it is %s; left unchanged",
            event.provider,
            event.provider_event_id,
            event.transaction_id,
            target.value,
            outcome.current_status,
        )
        return SettlementResult(
            status=SettlementStatus.CONFLICT,
            kind=event.kind,
            current_status=outcome.current_status,
        )

    def _authoritative_user(self, event: SettlementEvent, transaction: dict[str, Any]) -> str:
        """The transaction's recorded user wins over what the payload claims."""
        if event.user_id and event.user_id != transaction["user_id"]:
            logger.warning(
                "%s event %s names user %s but transaction %s belongs to %s",
                event.provider,
                event.provider_event_id,
                event.user_id,
                transaction["id"],
                transaction["user_id"],
            )
        if event.provider != transaction["provider"]:
            logger.warning(
                "%s event %s settles transaction %s created for %s",
                event.provider,
                event.provider_event_id,
                transaction["id"],
                transaction["provider"],
            )
        return transaction["user_id"]

    def _resolve_grant(
        self, event: SettlementEvent, transaction: dict[str, Any], now: datetime
    ) -> Grant:
        """Work out what a successful payment bought.

        Event metadata first, the transaction's own record as fallback.
        """
        item_type = ItemType.parse(event.metadata.item_type) or ItemType.parse(
            transaction["item_type"]
        )
        if item_type is None:
            raise MissingRequiredField("type", f"transaction {transaction['id']}")
        if transaction["item_type"] and item_type.value != transaction["item_type"]:
            logger.warning(
                "Transaction %s recorded %s but %s event says %s",
                transaction["id"],
                transaction["item_type"],
                event.provider,
                item_type.value,
            )

        if item_type == ItemType.ARTIST_SUBSCRIPTION:
            artist_id = (
                event.metadata.artist_id
                or transaction["artist_id"]
                or event.metadata.item_id
                or transaction["item_id"]
            )
            if not artist_id:
                raise MissingRequiredField("artistId", f"transaction {transaction['id']}")
            return ArtistSubscriptionGrant(
                artist_id=artist_id,
                valid_until=event.metadata.period_end or now + self._default_subscription_period,
                external_subscription_id=event.metadata.external_subscription_id
                or transaction["external_subscription_id"],
            )

        item_id = event.metadata.item_id or transaction["item_id"]
        if not item_id:
            raise MissingRequiredField("itemId", f"transaction {transaction['id']}")
        if item_type == ItemType.SONG:
            return SongPurchase(item_id)
        return AlbumPurchase(item_id)

    def _event_metadata(self, event: SettlementEvent) -> EventMetadata:
        return EventMetadata.create(causation_id=event.provider_event_id, provider=event.provider)
