"""Webhook processing: provider adapter, then coordinator, then an HTTP answer.

The status code tells the provider whether to redeliver:
- 2xx: settled, duplicate, or an anomaly a retry cannot fix
- 4xx: the request itself is bad (signature, unknown provider, payload)
- 503: storage trouble; redelivery will be retried cleanly
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from settlement_engine.settlement.errors import (
    MissingRequiredField,
    StorageError,
    UnknownProvider,
    VerificationError,
)
from settlement_engine.settlement.providers.base import ProviderAdapter, WebhookRequest
from settlement_engine.settlement.services.coordinator import SettlementCoordinator
from settlement_engine.settlement.types import SettlementResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookAck:
    """HTTP answer for one webhook delivery."""

    status_code: int
    body: dict[str, Any]
    result: SettlementResult | None = field(default=None, compare=False)


class WebhookProcessor:
    """Routes raw webhooks to their adapter and settles them."""

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        coordinator: SettlementCoordinator,
    ):
        self._adapters = adapters
        self._coordinator = coordinator

    @property
    def providers(self) -> list[str]:
        """Names of providers whose webhooks are accepted."""
        return sorted(self._adapters)

    def adapter_for(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise UnknownProvider(provider)
        return adapter

    def handle(self, provider: str, body: bytes, headers: Mapping[str, str]) -> WebhookAck:
        try:
            adapter = self.adapter_for(provider)
        except UnknownProvider as e:
            logger.warning("%s", e)
            return WebhookAck(404, {"error": "unknown_provider", "detail": str(e)})

        try:
            event = adapter.verify_and_normalize(WebhookRequest(body=body, headers=headers))
        except VerificationError as e:
            logger.warning("Rejected %s webhook: %s", provider, e.reason)
            return WebhookAck(400, {"error": "verification_failed", "detail": e.reason})

        try:
            result = self._coordinator.settle(event)
        except MissingRequiredField as e:
            logger.error(
                "Malformed %s event %s needs manual reconciliation: %s",
                provider,
                event.provider_event_id,
                e,
            )
            return WebhookAck(422, {"error": "missing_field", "field": e.field})
        except StorageError as e:
            logger.error(
                "Could not settle %s event %s, provider will retry: %s",
                provider,
                event.provider_event_id,
                e,
            )
            return WebhookAck(503, {"error": "temporarily_unavailable"})

        return WebhookAck(200, dict(adapter.ack_body), result)
