from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from loginguard.api.error_handling import register_exception_handlers
from loginguard.api.routes import router
from loginguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the revocation worker with the app and drain it on shutdown."""
    from loginguard.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.login.revocation_worker.start()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.login.revocation_worker.drain()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="LoginGuard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take X-Request-ID from the client or mint one, and echo it back.

    The id tags every log line of the request and becomes the trace id of
    any revocation job the request submits.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from loginguard.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "redis": "enabled" if runtime.cache is not None else "fallback",
        "revocation_worker": runtime.login.revocation_worker.stats.snapshot(),
    }


def create_app() -> FastAPI:
    return app
