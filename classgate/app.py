from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from classgate.api.error_handling import register_exception_handlers
from classgate.api.routes import router
from classgate.config import Settings
from classgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = _settings.app_version

HEALTH_CHECK_TIMEOUT_SECONDS = 3

DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # session and profile payloads stay out of shared caches
    "Cache-Control": "no-store",
}
HSTS_VALUE = "max-age=63072000; includeSubDomains"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from classgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", environment=runtime.settings.environment, version=__version__)
    try:
        yield
    finally:
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))


async def stamp_response(request: Request, call_next):
    """Bind the request id for logging and add the hardening headers."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", HSTS_VALUE)
    return response


async def health() -> Dict[str, Any]:
    """Unauthenticated liveness probe: store reachability and version."""
    from classgate.service.runtime import get_runtime

    store = get_runtime().store
    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        store_ok = False
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Settings = _settings) -> FastAPI:
    application = FastAPI(title="Classgate", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
        max_age=3600,
    )
    application.middleware("http")(stamp_response)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"])
    return application


app = create_app()
