"""Tests for subscription cancellation, expiry and access checks."""

from datetime import datetime, timedelta, timezone

import pytest

from settlement_engine.settlement.errors import MissingRequiredField
from settlement_engine.settlement.services import CancelResult, SubscriptionStore
from settlement_engine.settlement.types import (
    EventKind,
    PaymentMetadata,
    SettlementEvent,
    SettlementStatus,
)

from conftest import NOW

PERIOD_END = datetime(2026, 2, 15, tzinfo=timezone.utc)


@pytest.fixture
def active_subscription(coordinator, make_transaction):
    """A settled artist subscription with a Stripe subscription id."""
    make_transaction(
        "tx_sub", item_type="artist-subscription", item_id=None, artist_id="artist_1"
    )
    coordinator.settle(
        SettlementEvent(
            provider="stripe",
            kind=EventKind.PAYMENT_SUCCEEDED,
            provider_event_id="evt_paid",
            transaction_id="tx_sub",
            user_id="user_1",
            metadata=PaymentMetadata(period_end=PERIOD_END, external_subscription_id="sub_1"),
        )
    )


def cancellation(
    event_id="evt_cancel", external_id="sub_1", user_id=None, artist_id=None
) -> SettlementEvent:
    return SettlementEvent(
        provider="stripe",
        kind=EventKind.SUBSCRIPTION_CANCELLED,
        provider_event_id=event_id,
        user_id=user_id,
        metadata=PaymentMetadata(external_subscription_id=external_id, artist_id=artist_id),
    )


class TestCancellation:
    def test_cancel_keeps_access_until_period_end(self, coordinator, active_subscription, session_factory, recorder):
        recorder.clear()

        result = coordinator.settle(cancellation())

        assert result.status == SettlementStatus.SETTLED
        assert result.subscription["status"] == "cancelled"
        assert result.subscription["valid_until"] == PERIOD_END
        assert result.subscription["cancelled_at"] == NOW
        assert recorder.topics == ["subscription.cancelled"]
        with session_factory() as session:
            assert SubscriptionStore(session).has_access("user_1", "artist_1", NOW) is True

    def test_cancel_by_user_and_artist(self, coordinator, active_subscription):
        result = coordinator.settle(
            cancellation(external_id=None, user_id="user_1", artist_id="artist_1")
        )

        assert result.status == SettlementStatus.SETTLED

    def test_second_cancellation_is_duplicate(self, coordinator, active_subscription, recorder):
        coordinator.settle(cancellation("evt_c1"))
        recorder.clear()

        result = coordinator.settle(cancellation("evt_c2"))

        assert result.status == SettlementStatus.ALREADY_PROCESSED
        assert result.current_status == "cancelled"
        assert recorder.events == []

    def test_unknown_subscription(self, coordinator):
        result = coordinator.settle(cancellation(external_id="sub_missing"))

        assert result.status == SettlementStatus.NOT_FOUND

    def test_cancellation_naming_nothing_is_rejected(self, coordinator):
        with pytest.raises(MissingRequiredField):
            coordinator.settle(cancellation(external_id=None, user_id="user_1"))

    def test_store_cancel_requires_a_key(self, session_factory):
        with session_factory() as session:
            with pytest.raises(ValueError):
                SubscriptionStore(session).cancel(user_id="user_1")

    def test_store_reports_inactive(self, session_factory, coordinator, active_subscription):
        coordinator.settle(cancellation())

        with session_factory() as session:
            outcome = SubscriptionStore(session).cancel(external_subscription_id="sub_1")

        assert outcome.result == CancelResult.ALREADY_INACTIVE


class TestExpiry:
    def test_sweep_expires_due_subscriptions(self, coordinator, active_subscription, session_factory, recorder):
        recorder.clear()

        expired = coordinator.expire_subscriptions(PERIOD_END + timedelta(seconds=1))

        assert [(row["user_id"], row["artist_id"]) for row in expired] == [("user_1", "artist_1")]
        assert recorder.topics == ["subscription.expired"]
        with session_factory() as session:
            store = SubscriptionStore(session)
            assert store.get("user_1", "artist_1").status == "expired"
            assert store.has_access("user_1", "artist_1", PERIOD_END + timedelta(seconds=1)) is False

    def test_sweep_leaves_current_subscriptions(self, coordinator, active_subscription, recorder):
        recorder.clear()

        assert coordinator.expire_subscriptions(NOW) == []
        assert recorder.events == []

    def test_cancelled_subscriptions_expire_too(self, coordinator, active_subscription, session_factory):
        coordinator.settle(cancellation())

        expired = coordinator.expire_subscriptions(PERIOD_END)

        assert len(expired) == 1
        assert expired[0]["status"] == "expired"

    def test_sweep_is_idempotent(self, coordinator, active_subscription):
        later = PERIOD_END + timedelta(days=1)
        assert len(coordinator.expire_subscriptions(later)) == 1
        assert coordinator.expire_subscriptions(later) == []


class TestAccess:
    def test_access_ends_at_valid_until(self, session_factory, active_subscription):
        with session_factory() as session:
            store = SubscriptionStore(session)
            assert store.has_access("user_1", "artist_1", PERIOD_END - timedelta(seconds=1))
            assert not store.has_access("user_1", "artist_1", PERIOD_END)
            assert not store.has_access("user_1", "artist_2", NOW)
