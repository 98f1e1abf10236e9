"""
MeterSync Status API - operational status for operators and the UI
"""

import logging

import uvicorn
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from .. import __version__
from ..database import check_connection

logger = logging.getLogger(__name__)


def create_app(service) -> FastAPI:
    """Status API bound to a running MeterSyncService."""
    app = FastAPI(
        title="MeterSync Status API",
        description="Collection and synchronization status for a MeterSync agent",
        version=__version__,
    )

    # Health check endpoint
    @app.get("/health")
    def health_check():
        """Healthy while the local database is reachable"""
        if check_connection(service.local_engine):
            return {"status": "healthy", "running": service.running, "database": "connected"}
        logger.error("Health check failed: local database unreachable")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "running": service.running, "database": "disconnected"},
        )

    # Full status
    @app.get("/status")
    def get_status():
        """Collection, upload and download status"""
        return service.status()

    # Root endpoint
    @app.get("/")
    def root():
        """API information"""
        return {
            "name": "MeterSync Status API",
            "version": __version__,
            "endpoints": {
                "health": "GET /health",
                "status": "GET /status",
            },
        }

    return app


def build_server(app: FastAPI, host: str, port: int) -> uvicorn.Server:
    """Uvicorn server to run inside the service event loop via ``serve()``."""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    return uvicorn.Server(config)
