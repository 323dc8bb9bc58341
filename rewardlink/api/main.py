"""FastAPI application for the RewardLink webhook and health surface.

The app is built by ``create_app`` around an already-wired engine; it
owns no runtime state of its own, so the bot process and the tests can
share one engine instance.
"""

import logging
import time
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from rewardlink.api.routes import webhooks
from rewardlink.errors import DomainError
from rewardlink.services.engine import InteractivePostEngine
from rewardlink.services.metrics import MetricsRegistry

logger = logging.getLogger(__name__)


def _package_version() -> str:
    try:
        return _pkg_version("rewardlink")
    except PackageNotFoundError:
        return "unknown"


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Handle DomainError exceptions with consistent format.

    Args:
        request: The incoming request.
        exc: The DomainError exception.

    Returns:
        JSONResponse with error details.
    """
    return JSONResponse(
        status_code=400,
        content={"error_code": exc.code, "message": exc.user_message()},
    )


def create_app(
    engine: InteractivePostEngine,
    metrics: MetricsRegistry,
    webhook_secret: str,
) -> FastAPI:
    """Build the API app.

    Args:
        engine: Engine receiving entity change events.
        metrics: Registry served at ``/metrics``.
        webhook_secret: Shared HMAC secret for backend webhooks.

    Returns:
        Configured FastAPI application.
    """
    if not webhook_secret:
        logger.warning("No webhook secret configured; every webhook will be rejected")

    app = FastAPI(
        title="RewardLink API",
        description="Webhook and health surface for the RewardLink Discord bot",
        version=_package_version(),
    )
    app.state.engine = engine
    app.state.metrics = metrics
    app.state.webhook_secret = webhook_secret
    app.state.started_at = time.monotonic()

    app.add_exception_handler(DomainError, domain_error_handler)
    app.include_router(webhooks.router)

    @app.get("/health")
    def health_check() -> dict:
        """Liveness plus background task status."""
        return {
            "status": "healthy",
            "version": _package_version(),
            "uptime_seconds": int(time.monotonic() - app.state.started_at),
            "reconciler_running": engine.reconciler.running,
        }

    @app.get("/metrics")
    def metrics_exposition() -> Response:
        """Prometheus text exposition of the engine metrics."""
        return Response(content=metrics.exposition(), media_type=CONTENT_TYPE_LATEST)

    return app
