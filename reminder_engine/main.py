"""
FastAPI application entry point for the reminder engine.

This module initializes the FastAPI application with:
- CORS middleware for the PWA frontend
- Exception handlers for consistent error responses
- Startup checks for push configuration
- Logging configuration

Environment Variables:
    REMINDER_DB_URL: Database connection URL
    REMINDER_ENV: Environment (production/development, default: development)
    REMINDER_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
    VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY / VAPID_SUBJECT: Web Push identity
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from reminder_engine import __version__
from reminder_engine.config.settings import get_settings
from reminder_engine.services.exceptions import (
    ConfigurationError,
    KeyImportError,
    NotFoundError,
    ValidationError as ServiceValidationError,
)
from reminder_engine.utils.crypto import import_vapid_keys
from reminder_engine.utils.logging_config import get_logger, init_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Startup validates the VAPID configuration. A missing or broken key does
    not stop the API (subscriptions can still be registered) but is logged,
    and dispatch runs will fail until it is fixed.

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    logger = get_logger("api")
    logger.info("Starting reminder engine API")

    settings = get_settings()
    missing = settings.missing_vapid_settings()
    if missing:
        logger.warning(
            "VAPID is not configured; dispatch runs will fail",
            extra={"missing": missing},
        )
    else:
        try:
            import_vapid_keys(settings.vapid_public_key, settings.vapid_private_key)
            logger.info("VAPID key validation successful")
        except KeyImportError as e:
            logger.error(f"VAPID key validation failed: {e}")

    yield

    logger.info("Shutting down reminder engine API")


# Initialize logging before creating app
init_logging()

app = FastAPI(
    title="Reminder Engine API",
    description="Web Push delivery and appointment reminder scheduling. "
                "Delivers each reminder at most once across overlapping dispatch runs.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers


@app.exception_handler(ValidationError)
async def validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    Returns:
        JSON response with validation error details
    """
    logger = get_logger("api")
    logger.warning(
        "Validation error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": exc.errors(),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": exc.errors(),
        }
    )


@app.exception_handler(ServiceValidationError)
async def service_validation_exception_handler(
    request: Request, exc: ServiceValidationError
) -> JSONResponse:
    """Handle business-rule validation failures raised by services."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Validation Error",
            "message": exc.message,
            "field": exc.field,
        }
    )


@app.exception_handler(NotFoundError)
async def not_found_exception_handler(
    request: Request, exc: NotFoundError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={
            "error": "Not Found",
            "message": str(exc),
        }
    )


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(
    request: Request, exc: ConfigurationError
) -> JSONResponse:
    """
    Handle missing or invalid push configuration.

    Returns:
        JSON response naming the missing settings
    """
    logger = get_logger("api")
    logger.error(
        "Configuration error",
        extra={"path": request.url.path, "missing": exc.missing, "error": exc.message},
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Configuration Error",
            "message": exc.message,
            "missing": exc.missing,
        }
    )


@app.exception_handler(KeyImportError)
async def key_import_exception_handler(
    request: Request, exc: KeyImportError
) -> JSONResponse:
    """Handle VAPID keys that cannot be imported."""
    logger = get_logger("api")
    logger.error(
        "Key import error",
        extra={"path": request.url.path, "key_name": exc.key_name, "error": exc.message},
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Key Import Error",
            "message": str(exc),
        }
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """
    Handle SQLAlchemy database errors.

    Returns:
        JSON response with database error message
    """
    logger = get_logger("db")
    logger.error(
        "Database error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Database Error",
            "message": "An error occurred while accessing the database. "
                      "Please try again later.",
        }
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle all other unhandled exceptions.

    Returns:
        JSON response with generic error message
    """
    logger = get_logger("api")
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


# Health check endpoint


@app.get("/health", tags=["Health"])
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Health status and push configuration state
    """
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "reminder-engine",
        "version": __version__,
        "push_configured": settings.vapid_configured,
        "calendar_configured": settings.calendar_configured,
    }


# API routers
from reminder_engine.api import dispatch, push, reminders

app.include_router(push.router, prefix="/api")
app.include_router(reminders.router, prefix="/api")
app.include_router(dispatch.router, prefix="/api")
