from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bizmarket.api.error_handling import register_exception_handlers
from bizmarket.api.routes import router
from bizmarket.config import Settings
from bizmarket.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(sessions, interval_seconds: int) -> None:
    """Background loop deleting expired durable session rows."""

    try:
        while True:
            try:
                await sessions.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-session sweep; close store and cache on shutdown."""
    global _cleanup_task
    from bizmarket.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_session_cleanup(runtime.sessions, interval))

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="BizMarket Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; a wildcard is not allowed with credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id.

    Taken from X-Request-ID when the client sends one, otherwise generated.
    It is bound into the structlog context and echoed back in the response.
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
    # Auth responses carry personal data and Set-Cookie; never cache them
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report durable store and cache reachability.

    The durable store is required; a missing or unreachable cache only marks
    the service degraded since sessions fall back to the durable tier.
    """
    from bizmarket.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, awaitable) -> bool:
        try:
            await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", asyncio.to_thread(runtime.store.verify_connection))
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }

    degraded = False
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.ping())
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        degraded = not redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}
        degraded = True

    if not db_ok:
        status = "unhealthy"
    elif degraded:
        status = "degraded"
    else:
        status = "healthy"
    payload = {
        "status": status,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=payload)


def create_app() -> FastAPI:
    return app
