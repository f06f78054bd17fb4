"""CV Curation Backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# Logging is configured before the remaining app imports create their loggers
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import api_router, v2_router
from app.core.config import get_settings
from app.core.exceptions import AuthRequiredError, CurationError
from app.db import init_db, close_db, init_redis, close_redis, get_redis
from app.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from app.realtime.hub import get_hub

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Flipped on SIGTERM; /api/health then answers 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    hub = get_hub()
    hub.start(get_redis())

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await hub.stop()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_response(
    request: Request,
    event: str,
    status_code: int,
    detail,
    headers: dict[str, str] | None = None,
    **log_fields,
) -> JSONResponse:
    """Log server-side under a fresh debug_id and return only ``detail`` plus that id."""
    debug_id = str(uuid.uuid4())
    log = logger.warning if status_code < 500 else logger.error
    log(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        **log_fields,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail, "debug_id": debug_id}, headers=headers)


async def curation_exception_handler(request: Request, exc: CurationError) -> JSONResponse:
    """Domain errors carry their machine code and the HTTP status their class declares."""
    headers = None
    if isinstance(exc, AuthRequiredError):
        headers = {"WWW-Authenticate": 'Bearer realm="cloudflare-access"'}
    return _error_response(
        request, "curation_error", exc.status_code, exc.to_dict(), headers, code=exc.code, message=exc.message
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, "http_exception", exc.status_code, exc.detail, exc.headers, detail=exc.detail)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: full traceback in the log, a bare 500 for the client."""
    return _error_response(
        request,
        "unhandled_exception",
        500,
        "Internal server error",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(CurationError)(curation_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        use_lifespan: False in tests, which wire the database and Redis themselves
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Staging, commit and push workflow for curated CV data",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan if use_lifespan else None,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(dict.fromkeys([settings.frontend_url, *settings.allowed_origins])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api")
    app.include_router(v2_router, prefix="/v2")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
