from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from formvault.api.error_handling import register_exception_handlers
from formvault.api.routes import router
from formvault.logging import get_logger, set_correlation_id
from formvault.service.errors import ServiceError
from formvault.storage.errors import DatastoreError

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Assert super-users on startup and release the datastore on shutdown."""
    from formvault.service.runtime import get_runtime

    app.state.bootstrap_error = None
    try:
        runtime = get_runtime()
        if runtime.settings.bootstrap_on_startup:
            super_users = runtime.bootstrap.assert_super_users()
            logger.info("startup_bootstrap_complete", super_users=len(super_users))
    except (ServiceError, DatastoreError) as exc:
        # keep serving lookups; /healthz reports the failure
        app.state.bootstrap_error = str(exc)
        logger.error(
            "startup_bootstrap_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="formvault", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with the caller's X-Request-ID or a fresh UUID."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
def health() -> Any:
    from formvault.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    try:
        runtime = get_runtime()
        runtime.preferences.get_last_known_realm_string()
        checks["datastore"] = {
            "status": "ok",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }
    except Exception as exc:
        healthy = False
        checks["datastore"] = {"status": "error", "error": str(exc)}
        logger.warning("health_check_failed", check="datastore", error=str(exc))

    bootstrap_error = getattr(app.state, "bootstrap_error", None)
    if bootstrap_error:
        healthy = False
        checks["bootstrap"] = {"status": "error", "error": bootstrap_error}
    else:
        checks["bootstrap"] = {"status": "ok"}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
