"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.api.routes import health_router, refunds_router, webhooks_router
from settlement_engine.config import Settings, get_settings
from settlement_engine.database import create_session_factory, get_engine, init_db
from settlement_engine.settlement.config import SettlementConfig, validate_config
from settlement_engine.settlement.events import EventDispatcher
from settlement_engine.settlement.gateways import PaymentGateway, build_gateways
from settlement_engine.settlement.providers import ProviderAdapter, build_adapters
from settlement_engine.settlement.reactors import Notifier, register_reactors
from settlement_engine.settlement.services import RefundService, SettlementCoordinator
from settlement_engine.settlement.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    engine: Engine | None = app.state.engine
    if engine is not None and app.state.create_tables:
        init_db(engine)
    yield
    # Shutdown
    for gateway in app.state.gateways.values():
        close = getattr(gateway, "close", None)
        if close is not None:
            close()
    if engine is not None:
        engine.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    adapters: Mapping[str, ProviderAdapter] | None = None,
    gateways: Mapping[str, PaymentGateway] | None = None,
    dispatcher: EventDispatcher | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator can be injected; anything not given is built from
    settings.
    """
    settings = settings or get_settings()
    config = SettlementConfig.from_settings(settings)
    for issue in validate_config(config):
        logger.warning("Configuration: %s", issue)

    engine = None
    if session_factory is None:
        engine = get_engine(settings.database_url)
        session_factory = create_session_factory(engine)

    if dispatcher is None:
        dispatcher = EventDispatcher()
        register_reactors(dispatcher, notifier)

    coordinator = SettlementCoordinator(
        session_factory,
        dispatcher,
        default_subscription_period=config.subscription_period,
        timeout_seconds=config.timeout_seconds,
    )

    app = FastAPI(
        title="Settlement Engine API",
        description="Payment provider webhook settlement",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.create_tables = settings.debug
    app.state.session_factory = session_factory
    app.state.dispatcher = dispatcher
    app.state.coordinator = coordinator
    app.state.webhooks = WebhookProcessor(
        build_adapters(config) if adapters is None else adapters, coordinator
    )
    app.state.gateways = build_gateways(config) if gateways is None else gateways
    app.state.refunds = RefundService(session_factory, app.state.gateways)

    # Exception handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(refunds_router, prefix="/api/v1")

    return app
