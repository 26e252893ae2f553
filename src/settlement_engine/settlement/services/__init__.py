"""Settlement services."""

from settlement_engine.settlement.services.coordinator import SettlementCoordinator
from settlement_engine.settlement.services.entitlements import EntitlementStore
from settlement_engine.settlement.services.idempotency import ClaimResult, IdempotencyLedger
from settlement_engine.settlement.services.refunds import RefundRequest, RefundService
from settlement_engine.settlement.services.subscriptions import (
    CancelOutcome,
    CancelResult,
    SubscriptionStore,
)
from settlement_engine.settlement.services.transactions import (
    TransactionStateMachine,
    TransactionStore,
    TransitionOutcome,
    TransitionResult,
)

__all__ = [
    "SettlementCoordinator",
    "EntitlementStore",
    "ClaimResult",
    "IdempotencyLedger",
    "RefundRequest",
    "RefundService",
    "CancelOutcome",
    "CancelResult",
    "SubscriptionStore",
    "TransactionStateMachine",
    "TransactionStore",
    "TransitionOutcome",
    "TransitionResult",
]
