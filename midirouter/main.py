"""MIDI router FastAPI application.

Creates the routing service, wires the dashboard API under ``/api`` and the
port-server contract under ``/midi``, and exposes readiness and Prometheus
metrics endpoints.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI

from midirouter.api.port_server import router as port_server_router
from midirouter.api.routes import router as api_router
from midirouter.core.config import Settings, settings as default_settings
from midirouter.core.logging import setup_logging
from midirouter.metrics.prometheus import metrics_router
from midirouter.services.context import RoutingContext


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan.

        Opens the shared HTTP pool, builds the routing context and starts
        discovery, the engine and peer sync; tears them down on shutdown.
        """
        log = setup_logging(settings.log_level)
        async with httpx.AsyncClient(timeout=settings.request_timeout_s) as client:
            ctx = RoutingContext(settings, client)
            app.state.ctx = ctx
            await ctx.start()
            log.info("Ready on %s", ctx.api_url)
            try:
                yield
            finally:
                await ctx.stop()

    app = FastAPI(title="MIDI Router", version="0.1.0", lifespan=lifespan)
    app.include_router(api_router, prefix="/api", tags=["api"])
    app.include_router(port_server_router, prefix="/midi", tags=["port-server"])
    app.include_router(metrics_router)

    @app.get("/readyz")
    async def readyz():
        """Readiness probe endpoint returning a minimal OK payload."""
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    uvicorn.run(app, host=default_settings.api_host, port=default_settings.api_port)
