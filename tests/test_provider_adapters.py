"""Tests for Stripe and Razorpay webhook adapters.

Tests verify:
1. Signed payloads are accepted and bad signatures rejected
2. Provider event types map onto the normalized kinds
3. Platform metadata is extracted from each payload shape
"""

import json
import time
from datetime import datetime, timezone

import pytest

from settlement_engine.settlement.config import ProviderConfig, SettlementConfig
from settlement_engine.settlement.errors import VerificationError
from settlement_engine.settlement.providers import (
    RazorpayWebhookAdapter,
    StripeWebhookAdapter,
    WebhookRequest,
    build_adapters,
)
from settlement_engine.settlement.types import EventKind

from conftest import (
    RAZORPAY_SECRET,
    STRIPE_SECRET,
    razorpay_event,
    stripe_event,
    stripe_intent,
    stripe_signature,
)


@pytest.fixture
def stripe_adapter():
    return StripeWebhookAdapter(STRIPE_SECRET, tolerance_seconds=300)


@pytest.fixture
def razorpay_adapter():
    return RazorpayWebhookAdapter(RAZORPAY_SECRET)


class TestStripeVerification:
    def test_valid_signature(self, stripe_adapter, signed_stripe):
        body, headers = signed_stripe(
            stripe_event("payment_intent.succeeded", stripe_intent("tx_1"), "evt_42")
        )

        event = stripe_adapter.verify_and_normalize(WebhookRequest(body, headers))

        assert event.provider == "stripe"
        assert event.kind == EventKind.PAYMENT_SUCCEEDED
        assert event.provider_event_id == "evt_42"
        assert event.transaction_id == "tx_1"

    def test_header_lookup_is_case_insensitive(self, stripe_adapter, signed_stripe):
        body, headers = signed_stripe(stripe_event("payment_intent.succeeded", stripe_intent("tx_1")))
        lowered = {k.lower(): v for k, v in headers.items()}

        assert stripe_adapter.verify_and_normalize(WebhookRequest(body, lowered)).transaction_id == "tx_1"

    def test_wrong_secret_rejected(self, stripe_adapter, signed_stripe):
        body, headers = signed_stripe(
            stripe_event("payment_intent.succeeded", stripe_intent("tx_1")), secret="whsec_other"
        )

        with pytest.raises(VerificationError):
            stripe_adapter.verify_and_normalize(WebhookRequest(body, headers))

    def test_tampered_body_rejected(self, stripe_adapter, signed_stripe):
        body, headers = signed_stripe(stripe_event("payment_intent.succeeded", stripe_intent("tx_1")))
        tampered = body.replace(b"tx_1", b"tx_2")

        with pytest.raises(VerificationError):
            stripe_adapter.verify_and_normalize(WebhookRequest(tampered, headers))

    def test_missing_signature_rejected(self, stripe_adapter):
        with pytest.raises(VerificationError, match="missing"):
            stripe_adapter.verify_and_normalize(WebhookRequest(b"{}", {}))

    def test_stale_timestamp_rejected(self, stripe_adapter):
        payload = json.dumps(stripe_event("payment_intent.succeeded", stripe_intent("tx_1")))
        header = stripe_signature(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(VerificationError):
            stripe_adapter.verify_and_normalize(
                WebhookRequest(payload.encode(), {"Stripe-Signature": header})
            )

    def test_non_json_body_rejected(self, stripe_adapter):
        payload = "not json"
        request = WebhookRequest(payload.encode(), {"Stripe-Signature": stripe_signature(payload)})

        with pytest.raises(VerificationError):
            stripe_adapter.verify_and_normalize(request)


class TestStripeNormalization:
    def test_payment_intent_metadata(self, stripe_adapter):
        event = stripe_adapter.normalize(
            stripe_event(
                "payment_intent.succeeded",
                stripe_intent(
                    "tx_1",
                    intent_id="pi_9",
                    item_type="artist-subscription",
                    item_id=None,
                    artist_id="artist_7",
                    current_period_end=1771113600,
                ),
            )
        )

        assert event.user_id == "user_1"
        assert event.provider_payment_id == "pi_9"
        assert event.metadata.item_type == "artist-subscription"
        assert event.metadata.artist_id == "artist_7"
        assert event.metadata.period_end == datetime(2026, 2, 15, tzinfo=timezone.utc)

    def test_payment_failed_reason(self, stripe_adapter):
        intent = stripe_intent("tx_1", last_payment_error={"message": "Your card was declined."})

        event = stripe_adapter.normalize(stripe_event("payment_intent.payment_failed", intent))

        assert event.kind == EventKind.PAYMENT_FAILED
        assert event.failure_reason == "Your card was declined."

    def test_charge_refunded_uses_payment_intent(self, stripe_adapter):
        charge = {
            "id": "ch_1",
            "object": "charge",
            "payment_intent": "pi_1",
            "metadata": {"transactionId": "tx_1", "userId": "user_1"},
        }

        event = stripe_adapter.normalize(stripe_event("charge.refunded", charge))

        assert event.kind == EventKind.REFUND_ISSUED
        assert event.transaction_id == "tx_1"
        assert event.provider_payment_id == "pi_1"

    def test_invoice_paid_period_end(self, stripe_adapter):
        invoice = {
            "id": "in_1",
            "object": "invoice",
            "subscription": "sub_1",
            "payment_intent": "pi_2",
            "subscription_details": {
                "metadata": {"transactionId": "tx_2", "userId": "user_1", "artistId": "artist_1"}
            },
            "lines": {"data": [{"period": {"start": 1768435200, "end": 1771113600}}]},
        }

        event = stripe_adapter.normalize(stripe_event("invoice.paid", invoice))

        assert event.kind == EventKind.PAYMENT_SUCCEEDED
        assert event.transaction_id == "tx_2"
        assert event.metadata.artist_id == "artist_1"
        assert event.metadata.external_subscription_id == "sub_1"
        assert event.metadata.period_end == datetime(2026, 2, 15, tzinfo=timezone.utc)

    def test_subscription_deleted(self, stripe_adapter):
        subscription = {
            "id": "sub_1",
            "object": "subscription",
            "metadata": {"userId": "user_1", "artistId": "artist_1"},
        }

        event = stripe_adapter.normalize(stripe_event("customer.subscription.deleted", subscription))

        assert event.kind == EventKind.SUBSCRIPTION_CANCELLED
        assert event.metadata.external_subscription_id == "sub_1"
        assert event.user_id == "user_1"

    def test_unhandled_type(self, stripe_adapter):
        event = stripe_adapter.normalize(stripe_event("customer.created", {"id": "cus_1"}))

        assert event.kind == EventKind.UNHANDLED
        assert event.transaction_id is None

    def test_malformed_metadata_string_is_ignored(self, stripe_adapter):
        intent = {"id": "pi_1", "metadata": {"transactionId": "tx_1", "metadata": "{not json"}}

        event = stripe_adapter.normalize(stripe_event("payment_intent.succeeded", intent))

        assert event.transaction_id == "tx_1"
        assert event.metadata.item_type is None


class TestRazorpay:
    def _captured(self, notes):
        return razorpay_event(
            "payment.captured",
            {"payment": {"entity": {"id": "pay_1", "entity": "payment", "notes": notes}}},
        )

    def test_valid_signature(self, razorpay_adapter, signed_razorpay):
        body, headers = signed_razorpay(
            self._captured({"transactionId": "tx_1", "userId": "user_1"}), event_id="rzp_evt_7"
        )

        event = razorpay_adapter.verify_and_normalize(WebhookRequest(body, headers))

        assert event.kind == EventKind.PAYMENT_SUCCEEDED
        assert event.provider_event_id == "rzp_evt_7"
        assert event.transaction_id == "tx_1"
        assert event.provider_payment_id == "pay_1"

    def test_bad_signature_rejected(self, razorpay_adapter, signed_razorpay):
        body, headers = signed_razorpay(self._captured({}), secret="wrong")

        with pytest.raises(VerificationError):
            razorpay_adapter.verify_and_normalize(WebhookRequest(body, headers))

    def test_missing_signature_rejected(self, razorpay_adapter):
        with pytest.raises(VerificationError):
            razorpay_adapter.verify_and_normalize(WebhookRequest(b"{}", {}))

    def test_empty_notes_list(self, razorpay_adapter):
        """Razorpay sends [] when a payment has no notes."""
        event = razorpay_adapter.normalize(self._captured([]), event_id="e")

        assert event.kind == EventKind.PAYMENT_SUCCEEDED
        assert event.transaction_id is None

    def test_metadata_json_in_notes(self, razorpay_adapter):
        notes = {
            "transactionId": "tx_1",
            "metadata": json.dumps({"type": "album", "itemId": "album_3"}),
        }

        event = razorpay_adapter.normalize(self._captured(notes), event_id="e")

        assert event.metadata.item_type == "album"
        assert event.metadata.item_id == "album_3"

    def test_payment_failed(self, razorpay_adapter):
        payload = {
            "payment": {
                "entity": {
                    "id": "pay_1",
                    "notes": {"transactionId": "tx_1"},
                    "error_description": "Payment was declined by the bank",
                }
            }
        }

        event = razorpay_adapter.normalize(razorpay_event("payment.failed", payload), event_id="e")

        assert event.kind == EventKind.PAYMENT_FAILED
        assert event.failure_reason == "Payment was declined by the bank"

    def test_refund_notes_fall_back_to_payment(self, razorpay_adapter):
        payload = {
            "refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1", "notes": []}},
            "payment": {"entity": {"id": "pay_1", "notes": {"transactionId": "tx_1"}}},
        }

        event = razorpay_adapter.normalize(razorpay_event("refund.processed", payload), event_id="e")

        assert event.kind == EventKind.REFUND_ISSUED
        assert event.transaction_id == "tx_1"
        assert event.provider_payment_id == "pay_1"

    def test_subscription_charged(self, razorpay_adapter):
        payload = {
            "subscription": {
                "entity": {"id": "sub_R1", "current_end": 1771113600, "notes": {}}
            },
            "payment": {
                "entity": {"id": "pay_2", "notes": {"transactionId": "tx_2", "artistId": "artist_1"}}
            },
        }

        event = razorpay_adapter.normalize(
            razorpay_event("subscription.charged", payload), event_id="e"
        )

        assert event.kind == EventKind.PAYMENT_SUCCEEDED
        assert event.transaction_id == "tx_2"
        assert event.metadata.external_subscription_id == "sub_R1"
        assert event.metadata.period_end == datetime(2026, 2, 15, tzinfo=timezone.utc)

    def test_subscription_cancelled(self, razorpay_adapter):
        payload = {"subscription": {"entity": {"id": "sub_R1", "notes": {"userId": "user_1"}}}}

        event = razorpay_adapter.normalize(
            razorpay_event("subscription.cancelled", payload), event_id="e"
        )

        assert event.kind == EventKind.SUBSCRIPTION_CANCELLED
        assert event.metadata.external_subscription_id == "sub_R1"

    def test_unhandled(self, razorpay_adapter):
        event = razorpay_adapter.normalize(razorpay_event("order.paid", {}), event_id="e")

        assert event.kind == EventKind.UNHANDLED


class TestBuildAdapters:
    def test_only_providers_with_webhook_secret(self):
        config = SettlementConfig(
            providers=(
                ProviderConfig(name="stripe", webhook_secret="whsec_x"),
                ProviderConfig(name="razorpay", api_key="rzp_test_k", api_secret="s"),
            )
        )

        adapters = build_adapters(config)

        assert list(adapters) == ["stripe"]
        assert adapters["stripe"].ack_body == {"received": True}
