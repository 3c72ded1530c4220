"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scenepipe import __version__, configure_logging
from scenepipe.api.routes import router
from scenepipe.config import get_settings
from scenepipe.orchestrator.pipeline import Director, UnknownRunError
from scenepipe.orchestrator.state import IllegalTransitionError, UnitBusyError, UnknownUnitError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Build the Director from settings (unless a test injected one)

    Shutdown:
        - Cancel unfinished runs and close service clients
    """
    logger.info("Starting scenepipe API...")
    if getattr(app.state, "director", None) is None:
        app.state.director = Director.from_settings(get_settings())
    logger.info("API startup complete")

    yield

    logger.info("Shutting down scenepipe API...")
    await app.state.director.aclose()
    logger.info("API shutdown complete")


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    detail = exc.args[0] if exc.args else str(exc)
    return JSONResponse(status_code=status_code, content={"error": error, "detail": str(detail)})


def create_app() -> FastAPI:
    application = FastAPI(
        title="scenepipe API",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS for a local dev frontend
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(router)

    @application.exception_handler(UnknownRunError)
    async def unknown_run_handler(request: Request, exc: UnknownRunError):
        return _error(404, "Run not found", exc)

    @application.exception_handler(UnknownUnitError)
    async def unknown_unit_handler(request: Request, exc: UnknownUnitError):
        return _error(404, "Unit not found", exc)

    @application.exception_handler(UnitBusyError)
    async def busy_handler(request: Request, exc: UnitBusyError):
        return _error(409, "Unit busy", exc)

    @application.exception_handler(IllegalTransitionError)
    async def transition_handler(request: Request, exc: IllegalTransitionError):
        return _error(409, "Illegal transition", exc)

    @application.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(422, "Invalid request", exc)

    @application.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            }
        )

    return application


configure_logging()
app = create_app()
