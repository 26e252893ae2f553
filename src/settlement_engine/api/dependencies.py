"""FastAPI dependencies for dependency injection.

Collaborators are built once by create_app and kept on app.state.
"""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from settlement_engine.settlement.services import RefundService
from settlement_engine.settlement.webhooks import WebhookProcessor


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """Get database session dependency."""
    with request.app.state.session_factory() as session:
        yield session


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


def get_refund_service(request: Request) -> RefundService:
    return request.app.state.refunds


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
Webhooks = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
Refunds = Annotated[RefundService, Depends(get_refund_service)]
