"""Stripe webhook adapter.

Signature verification is delegated to the stripe library
(`Stripe-Signature` header, HMAC-SHA256 over "<timestamp>.<body>" with a
replay tolerance). Platform fields travel in the object's `metadata`:
transactionId, userId, and a JSON string `metadata` holding type, itemId
and artistId.
"""

from __future__ import annotations

import logging
from typing import Any

import stripe

from settlement_engine.settlement.errors import VerificationError
from settlement_engine.settlement.providers.base import (
    WebhookRequest,
    as_dict,
    dig,
    from_unix,
    parse_json_body,
    parse_platform_metadata,
    str_or_none,
)
from settlement_engine.settlement.types import EventKind, SettlementEvent

logger = logging.getLogger(__name__)


class StripeWebhookAdapter:
    """Verifies and normalizes Stripe webhook events."""

    provider_name = "stripe"
    SIGNATURE_HEADER = "Stripe-Signature"

    EVENT_KINDS: dict[str, EventKind] = {
        "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
        "invoice.paid": EventKind.PAYMENT_SUCCEEDED,
        "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
        "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
        "charge.refunded": EventKind.REFUND_ISSUED,
        "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELLED,
    }

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300):
        if not webhook_secret:
            raise ValueError("webhook_secret is required")
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds

    @property
    def ack_body(self) -> dict[str, Any]:
        return {"received": True}

    def verify_and_normalize(self, request: WebhookRequest) -> SettlementEvent:
        signature = request.header(self.SIGNATURE_HEADER)
        if not signature:
            raise VerificationError(self.provider_name, "missing Stripe-Signature header")

        try:
            payload = request.body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise VerificationError(self.provider_name, "body is not UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise VerificationError(self.provider_name, str(e)) from e

        return self.normalize(parse_json_body(self.provider_name, request.body))

    def normalize(self, event: dict[str, Any]) -> SettlementEvent:
        """Map a verified Stripe event onto a SettlementEvent."""
        event_type = event.get("type") or ""
        kind = self.EVENT_KINDS.get(event_type, EventKind.UNHANDLED)
        obj = as_dict(dig(event, "data", "object"))
        event_id = str_or_none(event.get("id"))

        if kind == EventKind.UNHANDLED:
            logger.info("Stripe event %s of type %r is not settled", event_id, event_type)
            return SettlementEvent(
                provider=self.provider_name,
                kind=kind,
                provider_event_id=event_id,
                raw_payload=event,
            )

        if event_type.startswith("invoice."):
            return self._normalize_invoice(event, kind, obj, event_id)
        if kind == EventKind.SUBSCRIPTION_CANCELLED:
            return self._normalize_subscription(event, obj, event_id)

        fields = as_dict(obj.get("metadata"))
        if kind == EventKind.REFUND_ISSUED:
            provider_payment_id = str_or_none(obj.get("payment_intent")) or str_or_none(obj.get("id"))
        else:
            provider_payment_id = str_or_none(obj.get("id"))

        return SettlementEvent(
            provider=self.provider_name,
            kind=kind,
            provider_event_id=event_id,
            transaction_id=str_or_none(fields.get("transactionId")),
            user_id=str_or_none(fields.get("userId")),
            provider_payment_id=provider_payment_id,
            failure_reason=str_or_none(dig(obj, "last_payment_error", "message")),
            metadata=parse_platform_metadata(
                fields,
                period_end=from_unix(obj.get("current_period_end")),
                external_subscription_id=str_or_none(obj.get("subscription")),
            ),
            raw_payload=event,
        )

    def _normalize_invoice(
        self,
        event: dict[str, Any],
        kind: EventKind,
        invoice: dict[str, Any],
        event_id: str | None,
    ) -> SettlementEvent:
        # Subscription invoices carry the initiation metadata on the subscription
        fields = as_dict(dig(invoice, "subscription_details", "metadata")) or as_dict(
            invoice.get("metadata")
        )
        return SettlementEvent(
            provider=self.provider_name,
            kind=kind,
            provider_event_id=event_id,
            transaction_id=str_or_none(fields.get("transactionId")),
            user_id=str_or_none(fields.get("userId")),
            provider_payment_id=str_or_none(invoice.get("payment_intent")),
            metadata=parse_platform_metadata(
                fields,
                period_end=from_unix(dig(invoice, "lines", "data", 0, "period", "end")),
                external_subscription_id=str_or_none(invoice.get("subscription")),
            ),
            raw_payload=event,
        )

    def _normalize_subscription(
        self,
        event: dict[str, Any],
        subscription: dict[str, Any],
        event_id: str | None,
    ) -> SettlementEvent:
        fields = as_dict(subscription.get("metadata"))
        return SettlementEvent(
            provider=self.provider_name,
            kind=EventKind.SUBSCRIPTION_CANCELLED,
            provider_event_id=event_id,
            transaction_id=str_or_none(fields.get("transactionId")),
            user_id=str_or_none(fields.get("userId")),
            metadata=parse_platform_metadata(
                fields,
                period_end=from_unix(subscription.get("current_period_end")),
                external_subscription_id=str_or_none(subscription.get("id")),
            ),
            raw_payload=event,
        )
