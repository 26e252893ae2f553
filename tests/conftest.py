"""Pytest fixtures for settlement engine tests."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from settlement_engine.config import Settings
from settlement_engine.database import create_session_factory
from settlement_engine.models import Base, Transaction
from settlement_engine.settlement.events import DomainEvent, EventDispatcher
from settlement_engine.settlement.services import SettlementCoordinator, TransactionStore

# Fixed "now" for settlement tests
NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

STRIPE_SECRET = "whsec_test_secret"
RAZORPAY_SECRET = "rzp_webhook_secret"


class RecordingSubscriber:
    """Dispatcher subscriber that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def topics(self) -> list[str]:
        return [e.topic.value for e in self.events]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads (TestClient runs routes in a pool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def dispatcher(recorder) -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.subscribe_all(recorder)
    return dispatcher


@pytest.fixture
def coordinator(session_factory, dispatcher) -> SettlementCoordinator:
    return SettlementCoordinator(session_factory, dispatcher, clock=lambda: NOW)


@pytest.fixture
def make_transaction(session_factory) -> Callable[..., str]:
    """Create and commit a pending transaction, returning its id."""

    def _make(
        transaction_id: str,
        *,
        user_id: str = "user_1",
        item_type: str = "song",
        item_id: str | None = "song_1",
        artist_id: str | None = None,
        amount: Decimal = Decimal("1.99"),
        provider: str = "stripe",
        provider_payment_id: str | None = None,
    ) -> str:
        with session_factory() as session, session.begin():
            TransactionStore(session).create_pending(
                transaction_id=transaction_id,
                user_id=user_id,
                item_type=item_type,
                item_id=item_id,
                artist_id=artist_id,
                amount=amount,
                provider=provider,
                provider_payment_id=provider_payment_id,
            )
        return transaction_id

    return _make


@pytest.fixture
def load_transaction(session_factory) -> Callable[[str], Transaction | None]:
    def _load(transaction_id: str) -> Transaction | None:
        with session_factory() as session:
            return session.get(Transaction, transaction_id)

    return _load


# =============================================================================
# Provider payload helpers
# =============================================================================


def stripe_signature(payload: str, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for a payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={digest}"


def razorpay_signature(body: bytes, secret: str = RAZORPAY_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def stripe_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1") -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def stripe_intent(
    transaction_id: str | None,
    *,
    intent_id: str = "pi_1",
    user_id: str = "user_1",
    item_type: str = "song",
    item_id: str | None = "song_1",
    artist_id: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """A PaymentIntent carrying platform metadata the way initiation writes it."""
    platform = {"type": item_type, "itemId": item_id, "artistId": artist_id}
    metadata: dict[str, Any] = {
        "userId": user_id,
        "metadata": json.dumps({k: v for k, v in platform.items() if v is not None}),
    }
    if transaction_id is not None:
        metadata["transactionId"] = transaction_id
    return {"id": intent_id, "object": "payment_intent", "metadata": metadata, **extra}


def razorpay_event(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "entity": "event",
        "account_id": "acc_test",
        "event": event_type,
        "contains": list(payload),
        "payload": payload,
        "created_at": 1767000000,
    }


@pytest.fixture
def signed_stripe() -> Callable[[dict[str, Any]], tuple[bytes, dict[str, str]]]:
    """Serialize a Stripe event and sign it, returning (body, headers)."""

    def _sign(event: dict[str, Any], secret: str = STRIPE_SECRET) -> tuple[bytes, dict[str, str]]:
        payload = json.dumps(event)
        return payload.encode("utf-8"), {"Stripe-Signature": stripe_signature(payload, secret)}

    return _sign


@pytest.fixture
def signed_razorpay() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Serialize a Razorpay event and sign it, returning (body, headers)."""

    def _sign(
        event: dict[str, Any], event_id: str = "rzp_evt_1", secret: str = RAZORPAY_SECRET
    ) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(event).encode("utf-8")
        return body, {
            "X-Razorpay-Signature": razorpay_signature(body, secret),
            "X-Razorpay-Event-Id": event_id,
        }

    return _sign


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        host="127.0.0.1",
        port=8000,
        debug=False,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_SECRET,
        stripe_webhook_tolerance_seconds=300,
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret=RAZORPAY_SECRET,
        default_subscription_days=30,
        settlement_timeout_seconds=10.0,
    )
