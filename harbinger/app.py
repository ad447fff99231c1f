from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from harbinger.api.error_handling import register_exception_handlers
from harbinger.api.routes import router
from harbinger.logging import get_logger, set_correlation_id
from harbinger.service.errors import StoreUnavailableError
from harbinger.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    try:
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP application around ``runtime`` (or one built from env)."""
    app = FastAPI(title="Harbinger", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime or Runtime()

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    # Registered last so it wraps everything else and the id is set first
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health() -> JSONResponse:
        """Check the user store and Redis under bounded timeouts."""
        rt: Runtime = app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        try:
            await asyncio.wait_for(
                asyncio.to_thread(rt.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["database"] = {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "unhealthy"}
        except Exception as exc:
            logger.error(
                "health_check_database_failed", error_type=type(exc).__name__, error=str(exc)
            )
            checks["database"] = {"status": "unhealthy"}

        try:
            await rt.cache.ping(timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["redis"] = {"status": "healthy"}
        except StoreUnavailableError:
            logger.error("health_check_redis_failed")
            checks["redis"] = {"status": "unhealthy"}

        healthy = all(check["status"] == "healthy" for check in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app
