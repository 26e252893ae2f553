"""Pydantic schemas for API request/response models."""

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None


class RefundCreate(BaseModel):
    """Schema for requesting a refund."""

    transaction_id: str = Field(min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=500)


class RefundResponse(BaseModel):
    """Refund accepted by the provider, awaiting its confirmation webhook."""

    transaction_id: str
    provider: str
    provider_refund_id: str
    provider_status: str
    status: str = "requested"
