"""
Terminal Status API
===================
Local supervision endpoints for a running terminal.

- GET /health   liveness plus connectivity summary
- GET /status   full terminal status (hub, sync, current order)
- GET /metrics  Prometheus exposition
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST


logger = logging.getLogger(__name__)


def create_app(terminal) -> FastAPI:
    """
    Build the status app for a terminal.

    The app's lifespan starts the terminal on startup and stops it on
    shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await terminal.start()
        logger.info("Terminal status API started")
        try:
            yield
        finally:
            logger.info("Shutting down terminal...")
            await terminal.stop()

    app = FastAPI(title="POS Terminal", lifespan=lifespan)
    app.state.terminal = terminal

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "online": terminal.connectivity.is_online,
            "hub": terminal.hub.state.value,
            "pending_orders": len(terminal.queue),
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.get("/status")
    async def status():
        return terminal.get_status()

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
