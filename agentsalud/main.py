from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from agentsalud import __version__
from agentsalud.core.config import settings
from agentsalud.errors import register_exception_handlers
from agentsalud.logging_utils import configure_logging
from agentsalud.middleware import (
    AccessLogMiddleware,
    RateLimitMiddleware,
    RequestContextMiddleware,
    SimpleRateLimiter,
)
from agentsalud.routes import (
    appointments,
    auth,
    catalog,
    doctors,
    organizations,
    patients,
    superadmin,
    webhooks,
    whatsapp,
)

configure_logging()

app = FastAPI(title=settings.app_name, version=__version__)

rate_limiter = SimpleRateLimiter(
    settings.rate_limit_requests, settings.rate_limit_window_seconds
)

# Starlette runs the last added middleware first.
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(AccessLogMiddleware)

register_exception_handlers(app)

for module in (
    auth,
    appointments,
    doctors,
    catalog,
    patients,
    organizations,
    superadmin,
    webhooks,
    whatsapp,
):
    app.include_router(module.router)


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scraping."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint used by infrastructure probes."""

    return {"status": "ok"}
