"""Razorpay webhook adapter.

Razorpay signs the raw body with HMAC-SHA256 (hex digest in
`X-Razorpay-Signature`) and identifies each delivery with
`X-Razorpay-Event-Id`. Platform fields travel in the entity's `notes`.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

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


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the body, as Razorpay computes it."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class RazorpayWebhookAdapter:
    """Verifies and normalizes Razorpay webhook events."""

    provider_name = "razorpay"
    SIGNATURE_HEADER = "X-Razorpay-Signature"
    EVENT_ID_HEADER = "X-Razorpay-Event-Id"

    EVENT_KINDS: dict[str, EventKind] = {
        "payment.captured": EventKind.PAYMENT_SUCCEEDED,
        "subscription.charged": EventKind.PAYMENT_SUCCEEDED,
        "payment.failed": EventKind.PAYMENT_FAILED,
        "refund.processed": EventKind.REFUND_ISSUED,
        "subscription.cancelled": EventKind.SUBSCRIPTION_CANCELLED,
    }

    def __init__(self, webhook_secret: str):
        if not webhook_secret:
            raise ValueError("webhook_secret is required")
        self._webhook_secret = webhook_secret

    @property
    def ack_body(self) -> dict[str, Any]:
        return {"status": "ok"}

    def verify_and_normalize(self, request: WebhookRequest) -> SettlementEvent:
        signature = request.header(self.SIGNATURE_HEADER)
        if not signature:
            raise VerificationError(self.provider_name, "missing X-Razorpay-Signature header")

        expected = compute_signature(self._webhook_secret, request.body)
        if not hmac.compare_digest(expected, signature.strip()):
            raise VerificationError(self.provider_name, "signature mismatch")

        payload = parse_json_body(self.provider_name, request.body)
        return self.normalize(payload, event_id=request.header(self.EVENT_ID_HEADER))

    def normalize(self, event: dict[str, Any], event_id: str | None = None) -> SettlementEvent:
        """Map a verified Razorpay event onto a SettlementEvent."""
        event_type = event.get("event") or ""
        kind = self.EVENT_KINDS.get(event_type, EventKind.UNHANDLED)
        event_id = str_or_none(event_id)
        payment = as_dict(dig(event, "payload", "payment", "entity"))
        subscription = as_dict(dig(event, "payload", "subscription", "entity"))

        if kind == EventKind.UNHANDLED:
            logger.info("Razorpay event %s of type %r is not settled", event_id, event_type)
            return SettlementEvent(
                provider=self.provider_name,
                kind=kind,
                provider_event_id=event_id,
                raw_payload=event,
            )

        if kind == EventKind.REFUND_ISSUED:
            refund = as_dict(dig(event, "payload", "refund", "entity"))
            notes = as_dict(refund.get("notes")) or as_dict(payment.get("notes"))
            provider_payment_id = str_or_none(refund.get("payment_id")) or str_or_none(
                payment.get("id")
            )
        elif kind == EventKind.SUBSCRIPTION_CANCELLED:
            notes = as_dict(subscription.get("notes"))
            provider_payment_id = None
        else:
            notes = as_dict(payment.get("notes")) or as_dict(subscription.get("notes"))
            provider_payment_id = str_or_none(payment.get("id"))

        return SettlementEvent(
            provider=self.provider_name,
            kind=kind,
            provider_event_id=event_id,
            transaction_id=str_or_none(notes.get("transactionId")),
            user_id=str_or_none(notes.get("userId")),
            provider_payment_id=provider_payment_id,
            failure_reason=str_or_none(payment.get("error_description"))
            if kind == EventKind.PAYMENT_FAILED
            else None,
            metadata=parse_platform_metadata(
                notes,
                period_end=from_unix(subscription.get("current_end")),
                external_subscription_id=str_or_none(subscription.get("id"))
                or str_or_none(payment.get("subscription_id")),
            ),
            raw_payload=event,
        )
