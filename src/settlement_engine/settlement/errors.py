"""Settlement error taxonomy.

Errors fall in two groups:
- Terminal for the delivery (VerificationError, MissingRequiredField,
  UnknownProvider): retrying the same payload cannot help.
- Retryable (StorageError, SettlementTimeout): the webhook must not be
  acknowledged so the provider redelivers.

Duplicate deliveries are not errors and have no exception type.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for settlement errors."""


class VerificationError(SettlementError):
    """Webhook failed authentication or could not be parsed."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} webhook verification failed: {reason}")


class UnknownProvider(SettlementError):
    """No adapter is configured for the named provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"No webhook adapter configured for provider '{provider}'")


class MissingRequiredField(SettlementError):
    """Provider payload lacks a field settlement cannot proceed without."""

    def __init__(self, field: str, detail: str | None = None):
        self.field = field
        self.detail = detail
        msg = f"Missing required field '{field}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class StorageError(SettlementError):
    """Durable store failure. Retryable."""


class SettlementTimeout(StorageError):
    """Unit of work exceeded its deadline and was rolled back."""

    def __init__(self, elapsed: float, limit: float):
        self.elapsed = elapsed
        self.limit = limit
        super().__init__(f"Settlement exceeded {limit:.2f}s (elapsed {elapsed:.2f}s)")


class TransactionNotFound(SettlementError):
    """Transaction id has no record on the platform."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class InvalidTransitionError(SettlementError):
    """Raised when an invalid status transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class RefundGatewayError(SettlementError):
    """Provider refund API rejected or failed the request."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} refund failed: {message}")
