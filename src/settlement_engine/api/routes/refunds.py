"""Refund request endpoint."""

from fastapi import APIRouter, HTTPException, status

from settlement_engine.api.dependencies import Refunds
from settlement_engine.api.schemas import ErrorResponse, RefundCreate, RefundResponse
from settlement_engine.settlement.errors import (
    InvalidTransitionError,
    MissingRequiredField,
    RefundGatewayError,
    TransactionNotFound,
    UnknownProvider,
)

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.post(
    "",
    response_model=RefundResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
def request_refund(payload: RefundCreate, refunds: Refunds) -> RefundResponse:
    """Ask the provider to refund a paid transaction.

    The transaction stays `paid` until the provider's refund webhook arrives.
    """
    try:
        result = refunds.request_refund(payload.transaction_id, reason=payload.reason)
    except TransactionNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found",
        )
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Transaction is {e.from_status}, only paid transactions can be refunded",
        )
    except (MissingRequiredField, UnknownProvider) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except RefundGatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        )

    return RefundResponse(
        transaction_id=result.transaction_id,
        provider=result.provider,
        provider_refund_id=result.provider_refund_id,
        provider_status=result.provider_status,
    )
