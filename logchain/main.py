"""
FastAPI Application Entry Point

This is the main application module that sets up the FastAPI app,
configures middleware, maps service errors to responses, and includes
all routers.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from logchain.config import settings
from logchain.database import database
from logchain.exceptions import ConfigurationError, LogValidationError, WriteConflictError
from logchain.models import ErrorResponse
from logchain.routers import applications, health, logs
from logchain.services.applications import ApplicationNotFoundError, ApplicationStateError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - Startup: Initialize the database pool and apply the schema
    - Shutdown: Close database connections gracefully
    """
    logger.info("Starting Log Chain Service...")
    if not settings.log_hash_key:
        logger.error("LOG_HASH_KEY is not set: appends and verification will fail")

    await database.connect()
    await database.init_schema()
    logger.info("Log Chain Service started successfully")

    yield

    logger.info("Shutting down Log Chain Service...")
    await database.disconnect()
    logger.info("Log Chain Service stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Log Chain Service API

    Multi-tenant, tamper-evident log storage:

    - **Per-application hash chains**: every log is HMAC-SHA256 chained to the previous one
    - **Canonical payloads**: key order and empty values never change a hash
    - **Chain verification**: gaps, broken links and modified records are all reported
    - **Synchronous or queued ingestion**: both go through the same append path

    ## Authentication

    - Applications: `X-API-Key` header
    - Application management: `X-Admin-Token` header
    """,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan
)


# ============================================================================
# Middleware
# ============================================================================

if settings.debug:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Add request timing header for monitoring."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    logger.debug(f"{request.method} {request.url.path} {response.status_code} {process_time:.4f}s")
    return response


# ============================================================================
# Exception Handlers
# ============================================================================

def error_response(status_code: int, message: str, errors=None, headers=None) -> JSONResponse:
    content = ErrorResponse(message=message, errors=errors or None).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report request validation failures as field -> messages."""
    errors = {}
    for error in exc.errors():
        # loc is e.g. ("body", "payload") or ("query", "limit")
        field = ".".join(str(part) for part in error["loc"][1:]) or str(error["loc"][0])
        errors.setdefault(field, []).append(error["msg"])
    return error_response(422, "Validation failed", errors)


@app.exception_handler(LogValidationError)
async def log_validation_handler(request: Request, exc: LogValidationError):
    return error_response(422, exc.message, exc.errors)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}")
    return error_response(500, str(exc))


@app.exception_handler(WriteConflictError)
async def write_conflict_handler(request: Request, exc: WriteConflictError):
    logger.warning(f"Write conflict: {exc}")
    return error_response(
        503,
        "Log chain is busy, retry the request",
        headers={"Retry-After": "1"}
    )


@app.exception_handler(ApplicationNotFoundError)
async def application_not_found_handler(request: Request, exc: ApplicationNotFoundError):
    return error_response(404, "Application not found")


@app.exception_handler(ApplicationStateError)
async def application_state_handler(request: Request, exc: ApplicationStateError):
    return error_response(400, str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler.

    Returns generic error responses to prevent information leakage.
    Detailed errors are logged internally.
    """
    logger.exception(f"Unhandled exception: {exc}")
    return error_response(500, "Internal server error")


# ============================================================================
# Include Routers
# ============================================================================

# Log append, listing and chain verification (API key)
app.include_router(logs.router, prefix=API_PREFIX)

# Application management (admin token)
app.include_router(applications.router, prefix=API_PREFIX)

# Health check and monitoring
app.include_router(health.router)


@app.get("/", tags=["root"])
async def root():
    """Basic service information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "logchain.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
