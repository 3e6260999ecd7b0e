"""
FastAPI application entry point for the mobile backend.

This module initializes the FastAPI application with:
- Application state (cache, GCM sender, APNS feedback sender)
- Background delivery workers and the push-task dispatcher (optional)
- Exception handlers for consistent error responses
- Logging configuration

Environment Variables:
    MOBILE_BACKEND_DB_URL: Database URL
    MOBILE_BACKEND_ENV: Environment (production/development, default: development)
    MOBILE_BACKEND_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
    MOBILE_BACKEND_START_WORKERS: Run the delivery pool and task dispatcher in this process
"""

import threading
from contextlib import asynccontextmanager
from typing import Any, Dict

import httpx
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from mobile_backend.src.config.settings import get_settings
from mobile_backend.src.db.database import SessionLocal
from mobile_backend.src.services.delivery_worker import DeliveryWorkerPool
from mobile_backend.src.services.push.apns_sender import ApnsSender
from mobile_backend.src.services.push.feedback_store import ApnsFeedbackStore
from mobile_backend.src.services.push.gcm_sender import GcmSender
from mobile_backend.src.services.push_task_dispatcher import PushTaskDispatcher
from mobile_backend.src.utils.cache import init_cache
from mobile_backend.src.utils.logging_config import init_logging, get_logger


# Timeout for background threads to finish their current batch on shutdown
WORKER_STOP_TIMEOUT_SECONDS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Create the cache and push senders, start background workers
    - Shutdown: Stop workers and close provider connections

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    # Startup
    logger = get_logger("api")
    logger.info("Starting mobile backend application")

    settings = get_settings()
    app.state.settings = settings
    app.state.cache = init_cache(settings.cache_max_entries)

    app.state.gcm_sender = None
    if settings.gcm_configured:
        app.state.gcm_sender = GcmSender(settings.gcm_key, settings.gcm_url)
    else:
        logger.info("No GCM key configured; Android notifications will not be sent")

    app.state.apns_sender = None
    if settings.apns_configured:
        app.state.apns_sender = ApnsSender.from_settings(settings, ApnsFeedbackStore(SessionLocal))

    app.state.worker_pool = None
    app.state.task_dispatcher = None
    dispatch_client = None
    if settings.start_workers:
        shutdown_event = threading.Event()
        if settings.apns_configured:
            app.state.worker_pool = DeliveryWorkerPool.from_settings(
                settings, SessionLocal, app.state.cache, shutdown_event
            )
            app.state.worker_pool.start()
        else:
            logger.warning("No APNS certificate configured; delivery workers not started")

        dispatch_client = httpx.Client(base_url=settings.task_dispatch_url)
        app.state.task_dispatcher = PushTaskDispatcher(
            SessionLocal, dispatch_client, settings, shutdown_event
        )
        app.state.task_dispatcher.start()

    logger.info("Mobile backend started successfully")

    yield

    # Shutdown
    logger.info("Shutting down mobile backend application")
    if app.state.task_dispatcher is not None:
        app.state.task_dispatcher.stop(WORKER_STOP_TIMEOUT_SECONDS)
    if app.state.worker_pool is not None:
        app.state.worker_pool.stop(WORKER_STOP_TIMEOUT_SECONDS)
    if dispatch_client is not None:
        dispatch_client.close()
    if app.state.gcm_sender is not None:
        app.state.gcm_sender.close()
    if app.state.apns_sender is not None:
        app.state.apns_sender.stop_connection()


# Initialize logging before creating app
init_logging()

# Create FastAPI application
app = FastAPI(
    title="Mobile Backend API",
    description="Query API over typed records with continuous queries whose "
                "future matches are pushed to Android and iOS devices.",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# Exception handlers


@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    Args:
        request: HTTP request
        exc: Pydantic or request ValidationError

    Returns:
        JSON response with validation error details
    """
    logger = get_logger("api")
    errors = [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]
    logger.warning(
        "Validation error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": errors,
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": jsonable_encoder(errors),
        }
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """
    Handle SQLAlchemy database errors.

    Args:
        request: HTTP request
        exc: SQLAlchemy exception

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

    Args:
        request: HTTP request
        exc: Unhandled exception

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
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Health status, application information and background worker state
    """
    pool = getattr(request.app.state, "worker_pool", None)
    return {
        "status": "healthy",
        "service": "mobile-backend",
        "version": "1.0.0",
        "delivery_workers_running": bool(pool is not None and pool.is_running),
    }


# API routers
from mobile_backend.src.api import entities, subscriptions
from mobile_backend.src.api.admin import push_router

app.include_router(entities.router, prefix="/api")
app.include_router(subscriptions.router, prefix="/api")
app.include_router(push_router, prefix="/admin")
