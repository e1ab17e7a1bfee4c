from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from consentmanager.api.error_handling import register_exception_handlers
from consentmanager.api.routes import router
from consentmanager.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its pools on shutdown."""
    from consentmanager.service.runtime import get_runtime

    get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Consent Manager Sessions", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID.

    A client supplied X-Request-ID is reused, otherwise a new UUID is
    generated. The id is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        # Responses carry bearer tokens
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness probe.

    Reports ``ok`` while the process is serving. Redis reachability is
    included when Redis is configured but does not change the status,
    since the blacklist degrades to rejecting logouts rather than logins.
    """
    from consentmanager.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    if runtime.redis is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.redis.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.warning("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "ok",
        "version": __version__,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
