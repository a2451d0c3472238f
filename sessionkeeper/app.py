from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from sessionkeeper.api.error_handling import register_exception_handlers
from sessionkeeper.api.routes import router
from sessionkeeper.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime and start the token sweeper; stop both on shutdown."""
    global _cleanup_task
    from sessionkeeper.service.cleanup import run_periodic_cleanup
    from sessionkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(
            run_periodic_cleanup(runtime.tokens.sweeper, interval)
        )
        logger.info("token_cleanup_scheduled", interval_seconds=interval)

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessionkeeper", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take X-Request-ID from the client or generate one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Liveness plus a token store round trip."""
    from sessionkeeper.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    runtime = get_runtime()
    verify = getattr(runtime.store, "verify_connection", None)
    if verify is None:
        checks["token_store"] = {"status": "ok", "type": "memory"}
    else:
        try:
            await asyncio.to_thread(verify)
            checks["token_store"] = {"status": "ok", "type": "postgres"}
        except Exception as exc:
            logger.warning("health_check_store_failed", error=str(exc))
            checks["token_store"] = {"status": "error", "type": "postgres"}
    healthy = all(check["status"] == "ok" for check in checks.values())
    body = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
