from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from seqdash.api.error_handling import register_exception_handlers
from seqdash.api.routes import router
from seqdash.config import Settings
from seqdash.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_purge_task: asyncio.Task | None = None


async def _run_periodic_purge(interval_seconds: int) -> None:
    """Drop expired session records, spent account tokens and stale OAuth states."""
    from seqdash.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        runtime = get_runtime()
        try:
            sessions = await asyncio.to_thread(runtime.sessions.purge_expired)
            tokens = await asyncio.to_thread(
                runtime.store.purge_account_tokens, datetime.now(timezone.utc)
            )
            runtime.auth.cleanup_expired_states()
        except Exception as exc:
            logger.error("periodic_purge_failed", error_type=type(exc).__name__, error=str(exc))
            continue
        logger.info("periodic_purge_complete", session_records=sessions, account_tokens=tokens)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _purge_task
    from seqdash.service.runtime import get_runtime

    runtime = get_runtime()
    _purge_task = asyncio.create_task(
        _run_periodic_purge(runtime.settings.session_purge_interval_seconds)
    )

    yield

    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task
    get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Random Sequence Dashboard Auth", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with the X-Request-ID header, or a fresh id."""
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
    # Responses carry tokens and account data
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Check the account and session store."""
    from seqdash.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    payload = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=payload)
