from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI

from airsocial.api.error_handling import register_exception_handlers
from airsocial.api.routes import router
from airsocial.api.schemas import Envelope
from airsocial.config import get_settings
from airsocial.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background workers on startup and drain them on shutdown."""
    from airsocial.service.runtime import get_runtime

    runtime = get_runtime()
    workers_started = False
    if runtime.settings.workers_enabled and not runtime.settings.test_mode:
        try:
            await runtime.supervisor.start()
            workers_started = True
        except Exception as exc:
            logger.error("startup_workers_failed", error=str(exc), error_type=type(exc).__name__)
            await runtime.supervisor.stop(runtime.settings.worker_shutdown_timeout_seconds)
            await runtime.close()
            raise
    logger.info("app_started", version=__version__, workers_started=workers_started)

    yield

    try:
        if workers_started:
            await runtime.supervisor.stop(runtime.settings.worker_shutdown_timeout_seconds)
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Air Social API", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated. Echoed back in the X-Request-ID response header.
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
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health", response_model=Envelope)
async def health() -> Envelope:
    """Check the database, Redis and the broker, each bounded by a timeout."""
    from airsocial.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=sanitize_error_message(str(exc)))
        return False

    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    overall_healthy = True
    for label, component in (
        ("database", runtime.store),
        ("redis", runtime.cache),
        ("rabbitmq", runtime.bus),
    ):
        ok = await _run_bounded(label, component.verify_connection)
        checks[label] = {"status": "ok" if ok else "error", "type": type(component).__name__}
        overall_healthy = overall_healthy and ok

    return Envelope(
        status="ok",
        data={
            "status": "ok" if overall_healthy else "error",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app


def main() -> None:
    settings = get_settings()
    try:
        uvicorn.run(app, host=settings.app_host, port=settings.app_port)
    except Exception as exc:
        logger.error("server_failed", error=str(exc), error_type=type(exc).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
