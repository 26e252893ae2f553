"""Webhook provider adapters."""

from __future__ import annotations

from settlement_engine.settlement.config import SettlementConfig
from settlement_engine.settlement.providers.base import ProviderAdapter, WebhookRequest
from settlement_engine.settlement.providers.razorpay_adapter import RazorpayWebhookAdapter
from settlement_engine.settlement.providers.stripe_adapter import StripeWebhookAdapter


def build_adapters(config: SettlementConfig) -> dict[str, ProviderAdapter]:
    """One adapter per provider that has a webhook secret configured."""
    adapters: dict[str, ProviderAdapter] = {}
    for provider in config.providers:
        if not provider.accepts_webhooks:
            continue
        if provider.name == "stripe":
            adapters["stripe"] = StripeWebhookAdapter(
                provider.webhook_secret, provider.signature_tolerance_seconds
            )
        elif provider.name == "razorpay":
            adapters["razorpay"] = RazorpayWebhookAdapter(provider.webhook_secret)
    return adapters


__all__ = [
    "ProviderAdapter",
    "WebhookRequest",
    "StripeWebhookAdapter",
    "RazorpayWebhookAdapter",
    "build_adapters",
]
