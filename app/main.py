# app/main.py

import logging
import os
import subprocess
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from app.core.logging_config import configure_logging
from app.core.config import get_settings
from app.core.security import require_auth
from app.dependencies import ReconciliationServices, build_services
from app.routes import admin, health, webhooks
from app.scheduler import start_scheduler, stop_scheduler

configure_logging()
logger = logging.getLogger(__name__)


def run_migrations():
    """Apply alembic migrations when RUN_MIGRATIONS=true"""
    if os.getenv('RUN_MIGRATIONS', 'false').lower() != 'true':
        return
    logger.info("Running database migrations...")
    result = subprocess.run(['alembic', 'upgrade', 'head'], capture_output=True, text=True)
    if result.returncode == 0:
        logger.info("Migrations completed successfully\n%s", result.stdout)
    else:
        logger.error("Migration failed: %s", result.stderr)


def create_app(services: Optional[ReconciliationServices] = None, start_background: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_background:
            run_migrations()
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(get_settings())
        services = app.state.services

        if start_background:
            # Jobs left from a previous run are recovered before new work arrives
            await services.queue.start()
            await start_scheduler(services.poller, services.settings)
        try:
            yield  # This is where the app runs
        finally:
            if start_background:
                await stop_scheduler()
                # Drains in-flight jobs; a sent marketplace order is never abandoned
                await services.queue.stop()

    app = FastAPI(title="Sale Reconciliation Service", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    # Add middleware to handle HTTPS behind proxy
    @app.middleware("http")
    async def proxy_headers_middleware(request: Request, call_next):
        forwarded_proto = request.headers.get("x-forwarded-proto")
        if forwarded_proto == "https":
            request.scope["scheme"] = "https"
        return await call_next(request)

    app.include_router(webhooks.router)  # Webhooks authenticate by signature, not basic auth
    app.include_router(admin.router, dependencies=[require_auth()])
    app.include_router(health.router)  # Health check should be accessible without auth
    return app


app = create_app()
