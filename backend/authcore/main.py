"""FastAPI application factory and main entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from authcore import __version__
from authcore.api.v1.router import api_router
from authcore.common.request_id import RequestIDMiddleware
from authcore.common.security_headers import SecurityHeadersMiddleware
from authcore.core.config import Settings, settings as default_settings
from authcore.core.context import AppContext, build_context
from authcore.core.errors import (
    general_exception_handler,
    http_exception_handler,
    integrity_error_handler,
    validation_exception_handler,
)
from authcore.core.logging import get_logger, setup_logging
from authcore.db.base import Base
from authcore.services.mfa_store import ensure_mfa_config

logger = get_logger(__name__)


def _initialize(ctx: AppContext) -> None:
    if ctx.settings.ENV in ("dev", "test"):
        # Production schemas come from alembic migrations
        Base.metadata.create_all(bind=ctx.engine)
    with ctx.session_factory() as db:
        ensure_mfa_config(db)


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    When ``context`` is given it is used as-is and the lifespan neither builds
    nor disposes resources; tests rely on this to share one in-memory engine.
    """
    settings = settings or (context.settings if context is not None else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        owned = context is None
        ctx = context or build_context(settings)
        app.state.ctx = ctx
        _initialize(ctx)
        logger.info("app_started", extra={"event": "app_started", "env": settings.ENV})
        yield
        if owned:
            ctx.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        description="Authentication, MFA and session lifecycle API",
        openapi_url="/openapi.json" if settings.ENV != "prod" else None,
        docs_url="/docs" if settings.ENV != "prod" else None,
        redoc_url="/redoc" if settings.ENV != "prod" else None,
        lifespan=lifespan,
    )
    if context is not None:
        app.state.ctx = context

    # Add middleware (order matters - last added is outermost)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.ENV == "prod")
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint - API information."""
        return {
            "message": settings.PROJECT_NAME,
            "version": __version__,
            "docs_url": "/docs" if settings.ENV != "prod" else None,
            "oauth_providers": settings.oauth_providers,
        }

    return app


app = create_app()
