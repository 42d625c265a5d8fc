from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request

from itemtraxx.api.error_handling import register_exception_handlers
from itemtraxx.api.routes import router
from itemtraxx.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3

_RESPONSE_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    from itemtraxx.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("runtime_close_failed", error=str(exc))


app = FastAPI(title="ItemTraxx Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind the request id, apply response headers and log the outcome.

    The id comes from the caller's ``X-Request-ID`` when supplied and is
    echoed back on the response.
    """
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _RESPONSE_HEADERS.items():
        response.headers.setdefault(name, value)
    # Responses carry tokens and tenant data
    response.headers.setdefault("Cache-Control", "no-store, private")
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Store and cache reachability plus the schema capabilities in effect."""
    from itemtraxx.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        ok = await _probe("database", verify_store)
        checks["database"] = {"status": "healthy" if ok else "unhealthy", "type": "postgres"}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if ok else "unhealthy"}

    healthy = all(c["status"] in ("healthy", "not_configured") for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "capabilities": runtime.store.capabilities.as_dict(),
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
