"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from billing.api import billing as billing_router
from billing.container import BillingContainer, build_container
from billing.core import otel
from billing.core.config import settings
from billing.core.logging import setup_logging
from billing.db.session import engine, init_db
from billing.services.gateway import MercadoPagoGateway
from billing.tasks.maintenance import maintenance_task

setup_logging()
logger = logging.getLogger(__name__)


def create_app(container: Optional[BillingContainer] = None) -> FastAPI:
    """Build the application around a container (the production one by default)"""
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if not container.settings.is_production:
            # Production schemas come from alembic migrations
            init_db()
        if container.settings.MAINTENANCE_ENABLED:
            task = asyncio.create_task(
                maintenance_task(container, container.settings.MAINTENANCE_INTERVAL_SECONDS)
            )
            logger.info("Billing maintenance task started")
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if isinstance(container.gateway, MercadoPagoGateway):
                container.gateway.close()

    app = FastAPI(title="Billing API", lifespan=lifespan)
    app.state.container = container
    app.include_router(billing_router.router)

    if otel.initialize_otel(container.settings):
        otel.instrument_fastapi(app)
        otel.instrument_httpx()
        otel.instrument_sqlalchemy(engine)
        logger.info("OpenTelemetry instrumentation enabled")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
