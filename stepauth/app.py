from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from stepauth.api.error_handling import register_exception_handlers
from stepauth.api.routes import router
from stepauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store on startup and release connections on shutdown."""
    from stepauth.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    logger.info("runtime_started", environment=runtime.settings.environment.value)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="StepAuth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with ``X-Request-ID`` (client supplied or generated).

    The id is bound into the logging context and echoed on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # tokens and codes travel in bodies
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/")
async def root() -> Dict[str, Any]:
    return {"status": 200, "message": "Backend Auth API Running"}


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from stepauth.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": 200,
        "message": "ok",
        "version": __version__,
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "redis": runtime.cache is not None,
    }


def create_app() -> FastAPI:
    return app
