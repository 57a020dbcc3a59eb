from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lexgate.api.error_handling import error_response_for, register_exception_handlers
from lexgate.api.routes import router
from lexgate.api.schemas import Envelope
from lexgate.config import get_settings
from lexgate.logging import get_logger, set_correlation_id
from lexgate.service.errors import ErrorKind

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_UNTHROTTLED_PATHS = frozenset({"/healthz", "/readyz"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime at startup so a bad signing key fails fast."""
    from lexgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def client_key(request: Request, trust_forwarded_for: bool) -> str:
    """Rate-limit key: the peer IP, or the first X-Forwarded-For hop when trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


async def add_correlation_id(request: Request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def enforce_rate_limit(request: Request, call_next):
    from lexgate.service.runtime import get_runtime

    if request.url.path in _UNTHROTTLED_PATHS or request.method == "OPTIONS":
        return await call_next(request)
    runtime = get_runtime()
    key = client_key(request, runtime.settings.trust_forwarded_for)
    if not runtime.rate_limiter.allow(key):
        logger.warning("rate_limited", client=key, path=request.url.path)
        return error_response_for(ErrorKind.RATE_LIMITED)
    return await call_next(request)


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


async def _probe(label: str, check: Callable[[], Awaitable[Any]]) -> bool:
    try:
        return bool(await asyncio.wait_for(check(), HEALTH_CHECK_TIMEOUT_SECONDS))
    except asyncio.TimeoutError:
        logger.error("readiness_probe_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("readiness_probe_failed", component=label, error=str(exc))
    return False


async def health() -> Dict[str, Any]:
    """Liveness: the process is up and serving."""
    return Envelope(data={"status": "healthy", "version": __version__}).model_dump()


async def ready():
    """Readiness: probes the session store and the credential repository."""
    from lexgate.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await _probe("repository", lambda: asyncio.to_thread(runtime.store.ping))
    cache_ok = await _probe("session_store", runtime.cache.ping)
    checks = {
        "repository": "ok" if store_ok else "unavailable",
        "session_store": "ok" if cache_ok else "unavailable",
    }
    is_ready = store_ok and cache_ok
    envelope = Envelope(data={"status": "ready" if is_ready else "not_ready", "checks": checks})
    return JSONResponse(status_code=200 if is_ready else 503, content=envelope.model_dump())


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Lexgate", version=__version__, lifespan=lifespan)

    # Starlette runs the last-registered middleware first, so register
    # innermost first: rate limit, then CORS, then correlation id.
    app.middleware("http")(add_security_headers)
    app.middleware("http")(enforce_rate_limit)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    app.add_api_route("/readyz", ready, methods=["GET"], tags=["health"])
    return app


app = create_app()
