from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from psycopg import Error as DatabaseError
from redis.exceptions import RedisError

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.api.schemas import Envelope
from warden.config import Settings
from warden.logging import get_logger, set_correlation_id
from warden.storage.postgres import PostgresStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", environment=runtime.settings.environment.value)

    yield

    try:
        await runtime.close()
    except (RedisError, OSError) as exc:
        logger.error("runtime_close_failed", error=str(exc))
    else:
        logger.info("runtime_closed")


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Credentials are allowed, so never fall back to a wildcard
    return [_settings.frontend_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID and echo it back.

    Taken from the client's X-Request-ID header when present, otherwise a new
    UUID; every log line emitted while handling the request carries it.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # Auth responses carry tokens; keep them out of every cache
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}
_HSTS_VALUE = "max-age=63072000; includeSubDomains"


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        if name not in response.headers:
            response.headers[name] = value
    if _settings.enable_hsts and request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = _HSTS_VALUE
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_PROBE_TIMEOUT_SECONDS = 3


async def _probe(component: str, check) -> str:
    """Run a blocking reachability check off the loop; report healthy or unhealthy."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component)
        return "unhealthy"
    except (DatabaseError, RedisError, OSError) as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return "unhealthy"
    return "healthy"


def _ping_database(store) -> None:
    with store._connect() as conn:
        conn.execute("SELECT 1")


@app.get("/healthz", response_model=Envelope)
async def health():
    """Report store and Redis reachability plus the running version."""
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if isinstance(runtime.store, PostgresStore):
        status = await _probe("database", lambda: _ping_database(runtime.store))
        checks["database"] = {"status": status}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        checks["redis"] = {"status": await _probe("redis", runtime.cache.verify_connection)}

    degraded = any(check["status"] == "unhealthy" for check in checks.values())
    return Envelope(
        status="ok",
        data={
            "status": "unhealthy" if degraded else "healthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
