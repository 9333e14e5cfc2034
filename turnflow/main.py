"""FastAPI application."""
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from .config import DEV_JWT_SECRET, settings
from .domain_errors import Conflict, DomainError, Unavailable, ValidationError
from .logging_config import configure_logging
from .problem_details import build_problem_details_response
from .routers import approvals, lockbox, stages, thresholds, turns

configure_logging()
logger = logging.getLogger(__name__)

# Create app
app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Turn lifecycle, approval workflow and lock box ledger API"
)

# Production safety checks (fail closed).
if settings.ENV.lower() == "production" and settings.JWT_SECRET_KEY == DEV_JWT_SECRET:
    raise RuntimeError("JWT_SECRET_KEY must be set in production (development secret detected).")
if settings.ENV.lower() == "production" and not settings.cors_origins:
    raise RuntimeError("ALLOWED_ORIGINS must be set in production (explicit frontend origin required).")
if settings.ENV.lower() == "production" and any(origin.strip() == "*" for origin in settings.cors_origins):
    raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard when using credentials).")
if settings.ENV.lower() == "production" and any(
    origin.startswith("http://localhost") or origin.startswith("http://127.0.0.1") for origin in settings.cors_origins
):
    raise RuntimeError("ALLOWED_ORIGINS contains localhost in production; set it to your real frontend origin.")

# CORS
cors_methods = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
cors_headers = ["Authorization", "Content-Type"]
if settings.ENV.lower() != "production":
    cors_headers = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=cors_methods,
    allow_headers=cors_headers,
)


@app.exception_handler(DomainError)
async def handle_domain_error(_: Request, exc: DomainError):
    return build_problem_details_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(_: Request, exc: RequestValidationError):
    return build_problem_details_response(
        ValidationError(
            code="REQUEST_VALIDATION_FAILED",
            message="Request body or parameters are invalid",
            details={"errors": jsonable_encoder(exc.errors())},
        )
    )


@app.exception_handler(StaleDataError)
async def handle_stale_data(_: Request, exc: StaleDataError):
    return build_problem_details_response(
        Conflict(
            code="VERSION_CONFLICT",
            message="The record was modified concurrently; reload and retry",
        )
    )


@app.exception_handler(OperationalError)
@app.exception_handler(DisconnectionError)
async def handle_storage_unavailable(_: Request, exc: Exception):
    logger.error("storage.unavailable error=%s", type(exc).__name__, exc_info=True)
    return build_problem_details_response(
        Unavailable(
            code="STORAGE_UNAVAILABLE",
            message="The data store is unavailable; retry later",
        )
    )


# Include routers
app.include_router(turns.router, prefix="/api/v1")
app.include_router(approvals.router, prefix="/api/v1")
app.include_router(thresholds.router, prefix="/api/v1")
app.include_router(stages.router, prefix="/api/v1")
app.include_router(lockbox.router, prefix="/api/v1")


@app.get("/api/v1/system/health")
def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": "1.0.0",
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "Turnflow API",
        "version": "1.0.0",
        "docs": "/docs"
    }
