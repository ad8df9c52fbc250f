"""
Bookflow Backend — FastAPI Application Factory
================================================

What:  Builds the Bookflow FastAPI application.
Why:   Middleware order, error rendering and the shared RateLimiter are wired
       in one place, so tests get the same app production runs.
How:   create_app() returns a new, fully wired instance; `app` below is the
       one uvicorn serves.
Who:   Called by uvicorn to start the server (uvicorn bookflow.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware Chain:                                       │
    │  ┌────────────┐ ┌────────┐ ┌─────────┐ ┌──────┐ ┌──────┐ │
    │  │ Rate Limit │→│ Req ID │→│ Logging │→│ GZip │→│ CORS │ │
    │  └────────────┘ └────────┘ └─────────┘ └──────┘ └──────┘ │
    │                                                          │
    │  Routes:                                                 │
    │  /api/auth  /api/authors  /api/works  /api/editions      │
    │  /api/openlibrary/import  /api/user  /health             │
    │                                                          │
    │  Exception Handlers:                                     │
    │  BookflowError → its status │ DatabaseError → 500 │ * → 500│
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Report missing Supabase configuration (non-fatal)
    3. Build the in-memory RateLimiter and start its sweep task

    Shutdown:
    1. Stop the sweep task
    2. Close the OpenLibrary and Supabase Auth HTTP clients
    3. Dispose database engine (close all connections)
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from bookflow import __version__
from bookflow.config import settings
from bookflow.database import dispose_engine
from bookflow.exceptions import (
    BookflowError,
    DatabaseError,
    RateLimitExceededError,
    ValidationError,
)
from bookflow.middleware.logging import RequestLoggingMiddleware
from bookflow.middleware.rate_limit import RateLimitMiddleware
from bookflow.middleware.request_id import RequestIDMiddleware, request_id_var
from bookflow.routes import auth, authors, editions, health, openlibrary, user, works
from bookflow.services.auth_service import auth_service
from bookflow.services.openlibrary_service import openlibrary_service
from bookflow.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "An unexpected error occurred"


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s

    Called once during app startup, before any other initialization.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )

    # Per-request lines come from bookflow.access instead
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start and stop the process-wide resources.

    The RateLimiter lives on `app.state` so the per-IP middleware and the
    author-addition limit share one instance, and tests can swap it.
    """
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Bookflow Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        # Not fatal: health checks and the public catalog still work

    limiter = RateLimiter(
        sweep_interval=settings.rate_limit_sweep_interval,
        max_age=settings.rate_limit_max_age,
    )
    app.state.rate_limiter = limiter
    limiter.start()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield  # Application runs here

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Bookflow Backend shutting down...")
    await limiter.stop()
    await openlibrary_service.close()
    await auth_service.close()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def error_body(exc: BookflowError) -> dict:
    """`{error, message, details?}` for a BookflowError."""
    if isinstance(exc, DatabaseError):
        return {"error": exc.category, "message": UNEXPECTED_ERROR}
    body = {"error": exc.category, "message": exc.message}
    if isinstance(exc, ValidationError) and exc.details:
        body["details"] = exc.details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """
    Render every error as `{error, message, details?}`.

    Handler hierarchy:
        BookflowError (and subclasses) → the exception's own status_code
            ValidationError            → 400 with `details`
            RateLimitExceededError     → 429 with Retry-After
            DatabaseError              → 500, generic message
        Exception (fallback)           → 500 Internal server error

    Security: Exception handlers NEVER expose internal details (stack traces,
    SQL, driver messages) in the API response. Context is logged server-side.
    """

    @app.exception_handler(BookflowError)
    async def handle_bookflow_error(request: Request, exc: BookflowError):
        rid = request_id_var.get("")
        if exc.status_code >= 500:
            logger.error(
                "[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context
            )
        else:
            logger.warning("[%s] %s: %s", rid, type(exc).__name__, exc.message)

        headers = {}
        if isinstance(exc, RateLimitExceededError) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc),
            headers=headers or None,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """
        Anything that is not a BookflowError is a bug: 500 with a fixed body.

        Stack trace is logged server-side ONLY (never in response).
        """
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": UNEXPECTED_ERROR},
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    """
    Build a new application instance.

    Each call returns independent middleware state and dependency
    overrides, which is what the test fixtures rely on.
    """
    app = FastAPI(
        title="Bookflow API",
        description=(
            "Track reading status across authors, works and editions, "
            "with an OpenLibrary-backed catalog."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Middleware executes in REVERSE order of addition: the last added
    # (RateLimit) runs first.

    # CORS: session cookies travel cross-origin, so credentials are allowed
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Location", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(auth.router)
    app.include_router(authors.router)
    app.include_router(works.router)
    app.include_router(editions.router)
    app.include_router(openlibrary.router)
    app.include_router(user.router)
    app.include_router(health.router)

    return app


# ── Application Instance ─────────────────────────────────────────────────
# uvicorn expects `bookflow.main:app` to be importable
app = create_app()
