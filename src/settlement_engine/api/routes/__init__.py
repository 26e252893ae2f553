"""API routes."""

from settlement_engine.api.routes.health import router as health_router
from settlement_engine.api.routes.refunds import router as refunds_router
from settlement_engine.api.routes.webhooks import router as webhooks_router

__all__ = ["health_router", "refunds_router", "webhooks_router"]
