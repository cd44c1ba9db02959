import logging
import sys
import traceback
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from mangum import Mangum

from renderer.app.api.auth import AUTH_CHALLENGE_MESSAGE
from renderer.app.api.routes import router as render_router
from renderer.app.context import get_context
from renderer.app.errors import AuthenticationError, RendererError
from renderer.app.utils.logging_utils import configure_logging

logger = logging.getLogger("renderer.main")

configure_logging()


def get_app_version() -> str:
    """
    Resolve application version.

    Falls back to the source version when the distribution is not installed.
    """
    try:
        return version("letter-renderer")
    except PackageNotFoundError:
        return "0.1.0"


def _context_for(app: FastAPI):
    provider = app.dependency_overrides.get(get_context, get_context)
    return provider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Starts warmup in the background so the first request finds LibreOffice
    already unpacked. Startup itself never waits for warmup.
    """
    ctx = _context_for(app)
    logger.info(
        "renderer_startup_begin",
        extra={
            "service": "renderer",
            "version": get_app_version(),
            "skip_convert": ctx.config.SKIP_CONVERT,
            "always_soffice": ctx.config.ALWAYS_SOFFICE,
        },
    )
    ctx.warmup.start()

    try:
        yield
    finally:
        logger.info("renderer_shutdown")


# =============================================================================
# Error responses
# =============================================================================

def _error_body(exc: BaseException, status_code: int, *, debug: bool) -> dict:
    body = {
        "error": type(exc).__name__,
        "message": str(exc) or "Unexpected error",
        "statusCode": status_code,
    }
    if debug:
        body["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return body


async def handle_authentication_error(
    request: Request, exc: AuthenticationError
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "Authentication required",
            "statusCode": exc.status_code,
            "message": AUTH_CHALLENGE_MESSAGE,
        },
    )


async def handle_renderer_error(request: Request, exc: RendererError) -> JSONResponse:
    debug = _context_for(request.app).config.DEBUG_RENDER
    logger.error(
        "rendering_failed",
        extra={
            "status_code": exc.status_code,
            "error": str(exc),
            "path": request.url.path,
        },
        exc_info=exc if debug else None,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc, exc.status_code, debug=debug),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    debug = _context_for(request.app).config.DEBUG_RENDER
    logger.exception(
        "unhandled_error",
        extra={"path": request.url.path},
    )
    return JSONResponse(
        status_code=500,
        content=_error_body(exc, 500, debug=debug),
    )


# =============================================================================
# Application factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Application factory for the letter renderer.
    """
    app = FastAPI(
        title="Letter Renderer",
        description="Fills DOCX templates with submitted data and returns PDF.",
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_exception_handler(AuthenticationError, handle_authentication_error)
    app.add_exception_handler(RendererError, handle_renderer_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(render_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness probe",
    )
    async def health_check():
        """
        Reports that the process is alive.

        NOTE:
        - Does NOT wait for warmup
        - Does NOT require authentication
        """
        ctx = _context_for(app)
        return {
            "status": "ok",
            "service": "renderer",
            "version": app.version,
            "runtime": f"python {sys.version.split()[0]}",
            "libreoffice": ctx.runtime.status.value,
        }

    return app


app = create_app()

# AWS Lambda entry point (API Gateway HTTP API v2 events)
handler = Mangum(app, lifespan="auto")
