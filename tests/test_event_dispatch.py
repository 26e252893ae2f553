"""Tests for settlement domain events and dispatchers.

Tests verify:
1. Events carry the right topic and serialize cleanly
2. Dispatchers route by topic in registration order
3. Subscriber failures are isolated and reported, never raised
4. The async dispatcher awaits subscribers one at a time
"""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from settlement_engine.settlement.events import (
    AsyncEventDispatcher,
    EventDispatcher,
    EventMetadata,
    PaymentFailed,
    PurchaseCompleted,
    SubscriptionCreated,
    Topic,
)


def purchase_completed() -> PurchaseCompleted:
    return PurchaseCompleted(
        metadata=EventMetadata.create(causation_id="evt_1", provider="stripe"),
        user_id="user_1",
        item_type="song",
        item_id="song_1",
        transaction_id="tx_1",
        price=Decimal("1.99"),
    )


def payment_failed() -> PaymentFailed:
    return PaymentFailed(
        metadata=EventMetadata.create(),
        transaction_id="tx_2",
        user_id="user_1",
        reason="card_declined",
    )


class TestDomainEvents:
    def test_topics(self):
        assert purchase_completed().topic == Topic.PURCHASE_COMPLETED
        assert payment_failed().topic == Topic.PAYMENT_FAILED

    def test_metadata_defaults(self):
        meta = EventMetadata.create()

        assert meta.event_id is not None
        assert meta.timestamp.tzinfo is not None
        assert meta.causation_id is None
        assert meta.source_service == "settlement"

    def test_serialization(self):
        event = SubscriptionCreated(
            metadata=EventMetadata.create(causation_id="evt_9", provider="razorpay"),
            user_id="user_1",
            artist_id="artist_1",
            valid_until=datetime(2026, 2, 15, tzinfo=timezone.utc),
            transaction_id="tx_1",
            gateway="razorpay",
        )

        data = json.loads(event.to_json())

        assert data["valid_until"] == "2026-02-15T00:00:00+00:00"
        assert data["metadata"]["causation_id"] == "evt_9"
        assert isinstance(data["metadata"]["event_id"], str)
        assert purchase_completed().to_dict()["price"] == "1.99"


class TestEventDispatcher:
    def test_routes_by_topic(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe(Topic.PURCHASE_COMPLETED, received.append)

        dispatcher.publish(purchase_completed())
        dispatcher.publish(payment_failed())

        assert [e.topic for e in received] == [Topic.PURCHASE_COMPLETED]

    def test_subscribe_to_several_topics(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe([Topic.PURCHASE_COMPLETED, "payment.failed"], received.append)

        dispatcher.publish_all([purchase_completed(), payment_failed()])

        assert len(received) == 2

    def test_registration_order(self):
        dispatcher = EventDispatcher()
        calls = []
        dispatcher.subscribe_all(lambda e: calls.append("first"))
        dispatcher.subscribe(Topic.PURCHASE_COMPLETED, lambda e: calls.append("second"))
        dispatcher.subscribe_all(lambda e: calls.append("third"))

        dispatcher.publish(purchase_completed())

        assert calls == ["first", "second", "third"]

    def test_failure_isolation(self, caplog):
        dispatcher = EventDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.subscribe_all(broken)
        dispatcher.subscribe_all(received.append)

        errors = dispatcher.publish(purchase_completed())

        assert len(received) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert "purchase.completed" in caplog.text

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)
        dispatcher.unsubscribe(received.append)

        dispatcher.publish(purchase_completed())

        assert received == []
        assert dispatcher.subscribers("purchase.completed") == []

    def test_async_subscriber_on_sync_dispatcher_is_reported(self):
        dispatcher = EventDispatcher()

        async def handler(event):
            pass

        dispatcher.subscribe_all(handler)
        errors = dispatcher.publish(purchase_completed())

        assert len(errors) == 1
        assert isinstance(errors[0], TypeError)

    def test_unknown_topic_rejected(self):
        with pytest.raises(ValueError):
            EventDispatcher().subscribe("payment.exploded", print)


class TestAsyncEventDispatcher:
    @pytest.mark.asyncio
    async def test_awaits_in_order(self):
        dispatcher = AsyncEventDispatcher()
        calls = []

        async def slow(event):
            await asyncio.sleep(0.02)
            calls.append("slow")

        async def fast(event):
            calls.append("fast")

        dispatcher.subscribe_all(slow)
        dispatcher.subscribe_all(fast)

        await dispatcher.publish(purchase_completed())

        assert calls == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_plain_callables_accepted(self):
        dispatcher = AsyncEventDispatcher()
        received = []
        dispatcher.subscribe(Topic.PAYMENT_FAILED, received.append)

        errors = await dispatcher.publish_all([purchase_completed(), payment_failed()])

        assert errors == []
        assert [e.topic for e in received] == [Topic.PAYMENT_FAILED]

    @pytest.mark.asyncio
    async def test_failure_isolation(self):
        dispatcher = AsyncEventDispatcher()
        received = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            received.append(event)

        dispatcher.subscribe_all(broken)
        dispatcher.subscribe_all(working)

        errors = await dispatcher.publish(purchase_completed())

        assert len(errors) == 1
        assert len(received) == 1
