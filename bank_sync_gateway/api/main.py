"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from bank_sync_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from bank_sync_gateway.api.v1 import connections, webhooks
from bank_sync_gateway.infrastructure.observability.logging import setup_logging
from bank_sync_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Bank Sync Gateway",
        description="Bank connection sync, provider webhooks and connection health escalation",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(webhooks.router, prefix="/v1", tags=["webhooks"])
    app.include_router(connections.router, prefix="/v1", tags=["connections"])

    return app


app = create_app()
