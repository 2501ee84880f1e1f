from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from walletauth.api.error_handling import register_exception_handlers
from walletauth.api.routes import router
from walletauth.api.schemas import Envelope
from walletauth.config import Settings
from walletauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from walletauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, cache_type=type(runtime.cache).__name__)

    yield

    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Wallet Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # Local dev hosts; never a wildcard
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
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        "X-Device-Fingerprint",
    ],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh UUID) to the logging context and echo it back."""
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
    # Responses carry tokens and codes
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Liveness plus storage and cache reachability; 503 when either is down."""
    from walletauth.service.runtime import get_runtime

    checks = await get_runtime().health()
    checks["version"] = __version__
    healthy = checks["healthy"]
    envelope = Envelope(success=healthy, data=checks)
    return JSONResponse(status_code=200 if healthy else 503, content=envelope.model_dump(mode="json"))
