"""Base protocol and helpers for webhook provider adapters.

Every adapter turns a raw, signed webhook request into a SettlementEvent
or raises VerificationError. Nothing downstream of an adapter sees
provider-specific payload shapes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from settlement_engine.settlement.errors import VerificationError
from settlement_engine.settlement.types import PaymentMetadata, SettlementEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookRequest:
    """Raw webhook as received: exact body bytes plus headers."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class ProviderAdapter(Protocol):
    """Protocol for webhook provider adapters."""

    provider_name: str

    @property
    def ack_body(self) -> dict[str, Any]:
        """Acknowledgement body the provider expects on success."""
        ...

    def verify_and_normalize(self, request: WebhookRequest) -> SettlementEvent:
        """Authenticate the request and normalize its payload.

        Raises:
            VerificationError: signature missing or invalid, or body not JSON.
        """
        ...


def as_dict(value: Any) -> dict[str, Any]:
    """Treat anything that is not a JSON object as empty.

    Providers send `[]` or null for empty note/metadata maps.
    """
    return value if isinstance(value, dict) else {}


def dig(payload: Mapping[str, Any], *path: str | int) -> Any:
    """Follow a path of keys/indexes, returning None at the first gap."""
    current: Any = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        elif isinstance(current, dict):
            current = current.get(step)
        else:
            return None
    return current


def from_unix(value: Any) -> datetime | None:
    """Epoch seconds to an aware UTC datetime; None if absent or invalid."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring unparseable timestamp %r", value)
        return None


def str_or_none(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


def parse_platform_metadata(
    fields: Mapping[str, Any],
    *,
    period_end: datetime | None = None,
    external_subscription_id: str | None = None,
) -> PaymentMetadata:
    """Build PaymentMetadata from the fields attached at payment initiation.

    Initiation stores flat keys (itemType, itemId, artistId) and/or a JSON
    string under "metadata" with keys type, itemId, artistId. The JSON
    string wins where both are present. A malformed JSON string is
    ignored; the coordinator falls back to the transaction's own record.
    """
    merged: dict[str, Any] = {
        "type": fields.get("itemType") or fields.get("type"),
        "itemId": fields.get("itemId"),
        "artistId": fields.get("artistId"),
    }

    encoded = fields.get("metadata")
    if isinstance(encoded, str) and encoded:
        try:
            decoded = json.loads(encoded)
        except ValueError:
            logger.warning("Ignoring malformed metadata string on provider payload")
            decoded = {}
        for key, value in as_dict(decoded).items():
            if value not in (None, ""):
                merged[key] = value
    elif isinstance(encoded, dict):
        merged.update({k: v for k, v in encoded.items() if v not in (None, "")})

    return PaymentMetadata(
        item_type=str_or_none(merged.get("type")),
        item_id=str_or_none(merged.get("itemId")),
        artist_id=str_or_none(merged.get("artistId")),
        period_end=period_end,
        external_subscription_id=external_subscription_id,
    )


def parse_json_body(provider: str, body: bytes) -> dict[str, Any]:
    """Decode a verified webhook body."""
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise VerificationError(provider, f"body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise VerificationError(provider, "body is not a JSON object")
    return payload
