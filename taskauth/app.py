from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from taskauth.api.error_handling import register_exception_handlers
from taskauth.api.routes import router
from taskauth.config import Settings
from taskauth.logging import get_logger, sanitize_error_message, set_correlation_id
from taskauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _sweep_once(runtime: Runtime) -> int:
    removed = runtime.sessions.sweep_refresh_tokens()
    runtime.store.delete_expired_pending_oauth_links(datetime.now(timezone.utc))
    return removed


async def _run_refresh_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Delete expired or revoked refresh tokens now and then every ``interval_seconds``."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            try:
                await asyncio.to_thread(_sweep_once, runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_sweep_failed", error=sanitize_error_message(str(exc)))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("refresh_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    sweep_task = asyncio.create_task(
        _run_refresh_sweep(runtime, runtime.settings.refresh_sweep_interval_seconds)
    )
    logger.info("refresh_sweep_scheduled", interval=runtime.settings.refresh_sweep_interval_seconds)

    yield

    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task
    logger.info("runtime_cleanup_complete")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Never a wildcard: credentials are allowed
    return [settings.client_url, "http://localhost:3000", "http://127.0.0.1:3000"]


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application around one Runtime.

    ``runtime`` wins over ``settings``; with neither, settings are read from
    the environment.
    """
    if runtime is None:
        runtime = Runtime(settings or Settings.from_env())
    settings = runtime.settings

    app = FastAPI(title="Task Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        # Browser clients read the rotated access token from Authorization
        expose_headers=["Authorization", "X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Take the correlation id from X-Request-ID or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
