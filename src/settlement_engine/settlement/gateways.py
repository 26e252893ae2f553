"""Outbound provider gateways used to request refunds.

A gateway only asks the provider to refund. The provider's confirmation
webhook (RefundIssued) is what changes local state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import stripe

from settlement_engine.settlement.config import SettlementConfig
from settlement_engine.settlement.errors import RefundGatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayRefund:
    """Provider's answer to a refund request."""

    provider_refund_id: str
    status: str
    raw: dict[str, Any]


class PaymentGateway(Protocol):
    """Protocol for provider refund APIs."""

    provider_name: str

    def refund(
        self,
        provider_payment_id: str,
        *,
        transaction_id: str,
        reason: str | None = None,
    ) -> GatewayRefund:
        """Request a full refund of a captured payment.

        Raises:
            RefundGatewayError: the provider rejected or failed the request.
        """
        ...


class StripeGateway:
    """Refunds through the Stripe API."""

    provider_name = "stripe"

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key

    def refund(
        self,
        provider_payment_id: str,
        *,
        transaction_id: str,
        reason: str | None = None,
    ) -> GatewayRefund:
        metadata = {"transactionId": transaction_id}
        if reason:
            metadata["reason"] = reason
        try:
            refund = stripe.Refund.create(
                payment_intent=provider_payment_id,
                metadata=metadata,
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund of %s failed: %s", provider_payment_id, e)
            raise RefundGatewayError(self.provider_name, str(e)) from e

        return GatewayRefund(
            provider_refund_id=refund["id"],
            status=refund.get("status") or "pending",
            raw=dict(refund),
        )


class RazorpayGateway:
    """Refunds through the Razorpay REST API."""

    provider_name = "razorpay"
    BASE_URL = "https://api.razorpay.com/v1"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        base_url: str = BASE_URL,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        if not key_id or not key_secret:
            raise ValueError("key_id and key_secret are required")
        self._client = client or httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
        )

    def refund(
        self,
        provider_payment_id: str,
        *,
        transaction_id: str,
        reason: str | None = None,
    ) -> GatewayRefund:
        notes = {"transactionId": transaction_id}
        if reason:
            notes["reason"] = reason
        try:
            response = self._client.post(
                f"/payments/{provider_payment_id}/refund",
                json={"notes": notes},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Razorpay refund of %s rejected with HTTP %s",
                provider_payment_id,
                e.response.status_code,
            )
            raise RefundGatewayError(
                self.provider_name, f"HTTP {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("Razorpay refund of %s failed: %s", provider_payment_id, e)
            raise RefundGatewayError(self.provider_name, str(e)) from e

        return GatewayRefund(
            provider_refund_id=str(body.get("id")),
            status=body.get("status") or "pending",
            raw=body,
        )

    def close(self) -> None:
        self._client.close()


def build_gateways(config: SettlementConfig) -> dict[str, PaymentGateway]:
    """One gateway per provider that has API credentials configured."""
    gateways: dict[str, PaymentGateway] = {}
    for provider in config.providers:
        if not provider.can_refund:
            continue
        if provider.name == "stripe":
            gateways["stripe"] = StripeGateway(provider.api_key)
        elif provider.name == "razorpay":
            gateways["razorpay"] = RazorpayGateway(provider.api_key, provider.api_secret)
    return gateways
