from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coursegate.api.error_handling import register_exception_handlers
from coursegate.api.routes import router
from coursegate.config import Settings
from coursegate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Frontend dev servers allowed when CORS_ALLOW_ORIGINS is unset
_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_STATIC_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

_sweep_task: Optional[asyncio.Task] = None


async def _start_background_work() -> None:
    global _sweep_task
    from coursegate.service.runtime import get_runtime

    interval = get_runtime().settings.verification_sweep_interval_seconds
    _sweep_task = asyncio.create_task(_run_verification_sweep(interval))


async def _stop_background_work() -> None:
    global _sweep_task
    from coursegate.service.runtime import get_runtime

    if _sweep_task is not None:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    await get_runtime().close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the verification sweep and release backends on shutdown."""
    try:
        await _start_background_work()
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        await _stop_background_work()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="CourseGate Accounts", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    # no wildcard: credentials may be enabled
    return _settings.cors_allow_origins or list(_DEV_ORIGINS)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a request id for logging and echo it in X-Request-ID.

    A client-supplied X-Request-ID is reused; otherwise one is generated.
    """
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _STATIC_SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    # token-bearing responses stay out of shared caches
    if path.startswith("/api/") or path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.enable_hsts and request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    """Run a blocking connectivity check off the event loop with a deadline."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store and Redis reachability plus build info."""
    from coursegate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        store_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        store_ok = await _probe("database", verify_store)
        checks["database"] = {"status": "healthy" if store_ok else "unhealthy"}

    cache_ok = True
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        cache_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy", "degraded": not cache_ok}

    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_verification_sweep(interval_seconds: int) -> None:
    """Background loop that drops abandoned verification codes."""
    from coursegate.service.runtime import get_runtime, sweep_ephemeral_state

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                codes, purged = await sweep_ephemeral_state(get_runtime())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("ephemeral_sweep_failed", error=str(exc))
                continue
            if codes or purged:
                logger.info("ephemeral_sweep_completed", codes=codes, purged=purged)
    except asyncio.CancelledError:
        logger.info("ephemeral_sweep_task_cancelled")


def create_app() -> FastAPI:
    return app
