from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import FastAPI

from sessionforge.api.error_handling import register_exception_handlers
from sessionforge.api.routes import router
from sessionforge.logging import get_logger, set_correlation_id
from sessionforge.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_purge_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    global _purge_task
    runtime = get_runtime()
    interval = runtime.settings.token_purge_interval_seconds
    if interval > 0:
        _purge_task = asyncio.create_task(
            _run_token_purge(
                runtime.store,
                interval,
                timedelta(hours=runtime.settings.token_retention_hours),
            )
        )

    yield

    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task
        _purge_task = None
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="SessionForge", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for log tracing.

    The id comes from the X-Request-ID header when the client sends one and
    is echoed back on the response.
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
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # token responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

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

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    overall_healthy = overall_healthy and db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "active_kid": runtime.codec.keyring.active.kid,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_token_purge(store, interval_seconds: int, retention: timedelta) -> None:
    """Background loop deleting refresh tokens that expired before the retention window."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            cutoff = datetime.now(timezone.utc) - retention
            try:
                purged = await asyncio.to_thread(store.purge_expired_refresh_tokens, cutoff)
                if purged:
                    logger.info("refresh_tokens_purged", count=purged, cutoff=cutoff.isoformat())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_token_purge_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("refresh_token_purge_cancelled")


def create_app() -> FastAPI:
    return app
