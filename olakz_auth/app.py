from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from olakz_auth.api.error_handling import register_exception_handlers
from olakz_auth.api.routes import router
from olakz_auth.config import get_settings
from olakz_auth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "1.0.0"

SERVICE_NAME = "auth-service"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from olakz_auth.service.runtime import get_runtime

    runtime = get_runtime()
    purged_tokens = runtime.tokens.purge_expired()
    purged_codes = runtime.otp.purge_expired()
    logger.info(
        "startup_complete",
        version=__version__,
        purged_refresh_tokens=purged_tokens,
        purged_otps=purged_codes,
    )

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]


async def add_correlation_id(request, call_next):
    """Bind the request's X-Request-ID (or a fresh UUID) to the logging context."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and get_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


async def health() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    application = FastAPI(title="Olakz Auth Service", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Request-ID",
            "X-Internal-API-Key",
        ],
        expose_headers=["X-Request-ID", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
        max_age=3600,
    )
    # Last registered runs outermost
    application.middleware("http")(add_security_headers)
    application.middleware("http")(add_correlation_id)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return application


app = create_app()


__all__ = ["app", "create_app"]
