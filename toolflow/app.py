from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolflow.api.error_handling import register_exception_handlers
from toolflow.api.routes import router
from toolflow.config import Settings
from toolflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 5

_sweeper_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; close adapters and cache on shutdown."""
    global _sweeper_task
    from toolflow.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _sweeper_task = asyncio.create_task(
            _run_session_sweeper(runtime.settings.session_sweep_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _sweeper_task:
            _sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweeper_task
            _sweeper_task = None
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Toolflow Gateway", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
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
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the request's log context.

    The same id is echoed back in the response header, used as the envelope
    ``request_id`` and accepted by ``POST /v1/tools/cancel``.
    """
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
    return response


@app.middleware("http")
async def add_api_version_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report tool backend and database reachability for the active mode."""
    from toolflow.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        checks = await asyncio.wait_for(
            runtime.factory.health_check(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks = {
            "tool": False,
            "database": False,
            "mode": runtime.settings.adapter_mode.value,
            "healthy": False,
        }

    def _state(ok: bool) -> str:
        return "connected" if ok else "disconnected"

    healthy = bool(checks["healthy"])
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "adapters": {
            "mode": checks["mode"],
            "tool": _state(checks["tool"]),
            "database": _state(checks["database"]),
        },
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.utcnow().isoformat(),
    }
    if not healthy:
        logger.warning("health_check_unhealthy", **body["adapters"])
    return JSONResponse(status_code=200 if healthy else 503, content=body)


async def _run_session_sweeper(interval_seconds: int) -> None:
    """Background loop deleting expired sessions from the store."""
    from toolflow.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                removed = await asyncio.to_thread(get_runtime().auth.sweep_expired_sessions)
                if removed:
                    logger.info("session_sweep_completed", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("session_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_sweeper_cancelled")


def create_app() -> FastAPI:
    return app
