from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import router
from gatehouse.logging import get_logger, set_correlation_id
from gatehouse.storage.ttl_store import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Warm the runtime on startup and release the store on shutdown."""
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except (StoreUnavailable, OSError) as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="gatehouse", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated) for logs."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "geolocation=(), microphone=(), camera=()"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report whether the TTL store and credential directory are reachable."""
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        store_ok = bool(
            await asyncio.wait_for(runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        )
    except (StoreUnavailable, asyncio.TimeoutError) as exc:
        logger.error("health_check_store_failed", error_type=type(exc).__name__)
        store_ok = False
    checks["store"] = {"ok": store_ok, "type": type(runtime.store).__name__}

    ping_directory = getattr(runtime.directory, "ping", None)
    if ping_directory is None:
        directory_ok = True
    else:
        try:
            directory_ok = bool(
                await asyncio.wait_for(
                    asyncio.to_thread(ping_directory), HEALTH_CHECK_TIMEOUT_SECONDS
                )
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="directory")
            directory_ok = False
    checks["directory"] = {"ok": directory_ok, "type": type(runtime.directory).__name__}

    healthy = store_ok and directory_ok
    body = {
        "status": "ok" if healthy else "error",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
