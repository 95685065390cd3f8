from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from lawrose_auth.api.error_handling import register_exception_handlers
from lawrose_auth.api.routes import router
from lawrose_auth.api.schemas import HealthResponse
from lawrose_auth.logging import get_logger, set_correlation_id
from lawrose_auth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the cleanup sweeper on startup; stop it and close the store on shutdown."""
    runtime = get_runtime()
    if runtime.sweeper is not None:
        await runtime.sweeper.start()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Lawrose Token Service", version=__version__, lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID taken from X-Request-ID or generated.

    The ID is bound into log entries and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.include_router(router)


@app.get("/healthz")
async def health():
    runtime = get_runtime()
    result = await runtime.tokens.health_check()
    body = HealthResponse(
        status=result.status,
        store="memory" if runtime.settings.use_memory_store else "redis",
        latency_ms=result.latency_ms,
        version=__version__,
    )
    return JSONResponse(
        status_code=200 if result.status == "healthy" else 503,
        content=body.model_dump(),
    )


def create_app() -> FastAPI:
    return app
