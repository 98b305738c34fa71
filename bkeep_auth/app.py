from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bkeep_auth.api.error_handling import register_exception_handlers
from bkeep_auth.api.routes import router
from bkeep_auth.config import get_settings
from bkeep_auth.logging import get_logger, set_correlation_id
from bkeep_auth.service.passkeys import CHALLENGE_SWEEP_INTERVAL_SECONDS
from bkeep_auth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_challenge_sweep(interval_seconds: int) -> None:
    """Purge expired WebAuthn challenges until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await get_runtime().passkeys.sweep_challenges()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("challenge_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    sweep_task = asyncio.create_task(
        _run_challenge_sweep(CHALLENGE_SWEEP_INTERVAL_SECONDS)
    )
    logger.info("app_started", version=__version__)

    yield

    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
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

    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="BKeep Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
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
        if request.url.path.startswith("/api/"):
            # Token-bearing bodies must not be cached by intermediaries
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.add_api_route("/healthz", health, methods=["GET"])
    app.include_router(router)
    return app


app = create_app()
