"""Refund issuance.

Asks the payment's provider to refund it. Local state is untouched until
the provider confirms with a refund webhook, which the coordinator
settles like any other event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.settlement.errors import (
    MissingRequiredField,
    TransactionNotFound,
    UnknownProvider,
)
from settlement_engine.settlement.gateways import PaymentGateway
from settlement_engine.settlement.services.transactions import (
    TransactionStateMachine,
    TransactionStore,
)
from settlement_engine.settlement.types import TransactionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundRequest:
    """A refund accepted by the provider and awaiting confirmation."""

    transaction_id: str
    provider: str
    provider_payment_id: str
    provider_refund_id: str
    provider_status: str


class RefundService:
    """Requests refunds of paid transactions from their provider."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateways: Mapping[str, PaymentGateway],
    ):
        self._session_factory = session_factory
        self._gateways = gateways

    def request_refund(self, transaction_id: str, *, reason: str | None = None) -> RefundRequest:
        """Request a full refund.

        Raises:
            TransactionNotFound: no such transaction.
            InvalidTransitionError: the transaction is not paid.
            MissingRequiredField: no provider payment id was recorded.
            UnknownProvider: no gateway for the transaction's provider.
            RefundGatewayError: the provider refused.
        """
        with self._session_factory() as session:
            transaction = TransactionStore(session).get(transaction_id)
            if transaction is None:
                raise TransactionNotFound(transaction_id)
            status = transaction.status
            provider = transaction.provider
            provider_payment_id = transaction.provider_payment_id

        TransactionStateMachine.validate_transition(status, TransactionStatus.REFUNDED)
        if not provider_payment_id:
            raise MissingRequiredField(
                "providerPaymentId", f"transaction {transaction_id} has no provider payment"
            )

        gateway = self._gateways.get(provider)
        if gateway is None:
            raise UnknownProvider(provider)

        result = gateway.refund(provider_payment_id, transaction_id=transaction_id, reason=reason)
        logger.info(
            "Refund %s requested from %s for transaction %s, awaiting confirmation",
            result.provider_refund_id,
            provider,
            transaction_id,
        )
        return RefundRequest(
            transaction_id=transaction_id,
            provider=provider,
            provider_payment_id=provider_payment_id,
            provider_refund_id=result.provider_refund_id,
            provider_status=result.status,
        )
