"""
HTTP surface of kvqueue: job submission, drain triggers, operator routes
and health probes, all served by one FastAPI app.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from kvqueue import __version__
from kvqueue.api.routes import (
    admin_router,
    drain_router,
    health_router,
    jobs_router,
    maintenance_router,
)
from kvqueue.config import get_settings
from kvqueue.constants import (
    RATE_LIMIT_HEADER_LIMIT,
    RATE_LIMIT_HEADER_REMAINING,
    RATE_LIMIT_HEADER_RESET,
)
from kvqueue.observability.logging import setup_logging
from kvqueue.observability.metrics import get_metrics, setup_metrics
from kvqueue.observability.tracing import instrument_fastapi, setup_tracing

logger = logging.getLogger(__name__)

_ROUTERS = (health_router, jobs_router, drain_router, maintenance_router, admin_router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Process-wide observability setup. Store clients are per request."""
    setup_logging()
    setup_metrics()
    setup_tracing()
    logger.info("kvqueue API ready", extra={"version": __version__})
    yield
    logger.info("kvqueue API stopping")


async def record_request_metrics(request: Request, call_next) -> Response:
    """Time every request and label it by route template, not raw path."""
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    get_metrics().record_api_request(
        method=request.method,
        endpoint=getattr(route, "path", "unmatched"),
        status=response.status_code,
        duration_seconds=time.perf_counter() - started,
    )
    return response


def create_app() -> FastAPI:
    """
    Build the kvqueue API application.

    Returns:
        FastAPI: App with every router mounted and request metrics enabled.
    """
    app = FastAPI(
        title="kvqueue API",
        description="Job queue, retries, rate limiting and caching over a REST key-value store",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            RATE_LIMIT_HEADER_LIMIT,
            RATE_LIMIT_HEADER_REMAINING,
            RATE_LIMIT_HEADER_RESET,
        ],
    )
    app.middleware("http")(record_request_metrics)

    for router in _ROUTERS:
        app.include_router(router)

    instrument_fastapi(app)
    return app


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "kvqueue.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


app = create_app()


if __name__ == "__main__":
    run()
