from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails before serving."""
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("warden_started", version=__version__)

    yield

    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        if hasattr(runtime.store, "close"):
            runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with a correlation id.

    A client-supplied ``X-Request-ID`` is reused; otherwise one is generated.
    The id is echoed back in the response header and the error envelope.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", tags=["health"])
async def healthz():
    return {"status": "ok", "version": __version__}
