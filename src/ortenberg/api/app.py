"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ortenberg import __version__
from ortenberg.components import Components, create_components
from ortenberg.config import get_settings
from ortenberg.errors import (
    ConflictError,
    DuplicateError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP responses."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())[1:]),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"errors": errors})

    @app.exception_handler(ValidationError)
    async def handle_validation(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(DuplicateError)
    async def handle_duplicate(request: Request, exc: DuplicateError):
        return _error(409, str(exc))

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        return _error(409, str(exc))

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(InfrastructureError)
    async def handle_infrastructure(request: Request, exc: InfrastructureError):
        logger.error(f"[API-ERROR] {exc}")
        return _error(503, "Service temporarily unavailable.")


def create_app(components: Optional[Components] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        components: Pre-built components owned by the caller. When omitted,
            the app builds its own on startup and closes them on shutdown.
    """
    settings = components.settings if components else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if components is not None:
            yield
            return

        owned = create_components(settings)
        await owned.database.create_all()
        app.state.components = owned
        try:
            yield
        finally:
            await owned.close()

    app = FastAPI(
        title="Ortenberg API",
        description="Bank-authorized token withdrawal activation service",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
        # No interactive docs in production
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if components is not None:
        app.state.components = components

    register_exception_handlers(app)

    from ortenberg.api.routes import health, withdrawal

    app.include_router(health.router, tags=["Health"])
    app.include_router(withdrawal.router)

    return app
