"""Main application entrypoint for filerelay."""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from filerelay.api.v1 import routes_health
from filerelay.api.v1.routes_upload import router as upload_router
from filerelay.core.config import settings
from filerelay.core.logging import setup_logging
from filerelay.core.middleware import HTTPErrorLoggingMiddleware
from filerelay.pipeline.exceptions import UploadError

logger = logging.getLogger(__name__)


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    """Render a typed pipeline failure as ``{"error": message}``."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Request validation failed", extra={"errors": exc.errors()})
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error", extra={"path": request.url.path}, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Upload failed"})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    # Initialize logging first
    setup_logging()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
    )

    app.add_middleware(HTTPErrorLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "x-upload-client"],
    )

    app.add_exception_handler(UploadError, upload_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Register routers
    app.include_router(routes_health.router, tags=["health"])
    app.include_router(upload_router)

    return app


# Export app instance for ASGI servers
app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
