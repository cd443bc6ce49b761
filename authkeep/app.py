from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authkeep.api.error_handling import register_exception_handlers
from authkeep.api.routes import router
from authkeep.config import get_settings
from authkeep.logging import get_logger, set_correlation_id
from authkeep.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

SERVICE_NAME = "authkeep"
HEALTH_CHECK_TIMEOUT_SECONDS = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release store connections on shutdown."""
    get_runtime()
    logger.info("service_started", service=SERVICE_NAME, version=__version__)
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


async def _run_bounded(label: str, func: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


async def health() -> JSONResponse:
    """Report store connectivity; 503 when any dependency is unreachable."""
    runtime = get_runtime()
    checks: Dict[str, str] = {}
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = "healthy" if db_ok else "unhealthy"
    cache_ok = await _run_bounded("ephemeral-store", runtime.cache.verify_connection)
    checks["ephemeral-store"] = "healthy" if cache_ok else "unhealthy"

    healthy = db_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": SERVICE_NAME,
            "version": __version__,
            "checks": checks,
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="authkeep", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Token-bearing responses must not be cached by proxies
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            client_ip=request.client.host if request.client else None,
        )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Propagate X-Request-ID (or a new UUID) into logs and the response."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return app


app = create_app()


def main() -> None:
    """Serve the app with uvicorn on the configured port."""
    import uvicorn

    uvicorn.run("authkeep.app:app", host="0.0.0.0", port=get_settings().port)
