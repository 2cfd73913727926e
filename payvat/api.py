"""FastAPI app with health, API routers, and proper error handling.

Every error response has the shape ``{"error": code, "detail": message}``.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AuthError
from .config import settings
from .db import AsyncSessionMaker
from .logging_config import setup_logging
from .parsers import ParseError
from .payments import GatewayError
from .pipelines.cleanup import GuestCleanupScheduler, GuestConversionError
from .pipelines.processing import DocumentProcessingError, UploadRejected
from .revenue import RevenueSubmissionError
from .routes import api_router
from .schemas import ErrorResponse, HealthResponse
from .vat import VATCalculationError

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "file_too_large",
    422: "upload_blocked",
    429: "rate_limited",
    502: "upstream_error",
}


def error_response(status_code: int, error: str, detail: str | None, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
        headers=headers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} {settings.version} starting ({settings.environment.value})")

    scheduler = None
    if settings.cleanup.enabled:
        scheduler = GuestCleanupScheduler(AsyncSessionMaker)
        scheduler.start()

    yield

    # Shutdown
    if scheduler is not None:
        await scheduler.stop()
    logger.info("Application shutting down")


app = FastAPI(
    title="PayVAT",
    version=settings.version,
    description="Irish VAT compliance: document extraction, VAT3 submission and payment",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        exc.status_code,
        HTTP_ERROR_CODES.get(exc.status_code, "error"),
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Request body/query validation failures are plain 400s."""
    messages = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query"))
        messages.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return error_response(status.HTTP_400_BAD_REQUEST, "validation_error", "; ".join(messages))


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    code = "forbidden" if exc.status_code == status.HTTP_403_FORBIDDEN else "unauthorized"
    return error_response(exc.status_code, code, exc.message)


@app.exception_handler(UploadRejected)
async def upload_rejected_handler(request: Request, exc: UploadRejected):
    """Handle rejected uploads (validation, security scan, rate limit)."""
    logger.info(f"Upload rejected ({exc.status_code}): {exc.message}")
    return error_response(exc.status_code, HTTP_ERROR_CODES.get(exc.status_code, "upload_rejected"), exc.message)


@app.exception_handler(ParseError)
async def parse_error_handler(request: Request, exc: ParseError):
    """Handle document parsing errors."""
    logger.error(f"Parse error: {exc}")
    return error_response(status.HTTP_400_BAD_REQUEST, "parse_error", str(exc))


@app.exception_handler(DocumentProcessingError)
async def processing_error_handler(request: Request, exc: DocumentProcessingError):
    """Handle document processing errors."""
    logger.error(f"Processing error: {exc}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "processing_error", str(exc))


@app.exception_handler(VATCalculationError)
async def vat_error_handler(request: Request, exc: VATCalculationError):
    return error_response(status.HTTP_400_BAD_REQUEST, "vat_calculation_error", str(exc))


@app.exception_handler(GuestConversionError)
async def guest_conversion_error_handler(request: Request, exc: GuestConversionError):
    return error_response(status.HTTP_400_BAD_REQUEST, "guest_conversion_error", str(exc))


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """Handle payment gateway errors."""
    logger.warning(f"Payment gateway error ({exc.kind}): {exc.message}")
    return error_response(exc.status_code, exc.kind, exc.message)


@app.exception_handler(RevenueSubmissionError)
async def revenue_error_handler(request: Request, exc: RevenueSubmissionError):
    """Handle ROS submission failures."""
    logger.error(f"Revenue submission error: {exc}")
    return error_response(status.HTTP_502_BAD_GATEWAY, "revenue_submission_error", str(exc))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal server error")


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "auth": "/api/auth",
            "upload": "/api/upload",
            "documents": "/api/documents",
            "vat": "/api/vat",
            "payments": "/api/payments",
            "reports": "/api/reports",
            "admin": "/api/admin",
            "docs": "/docs",
        },
    }


app.include_router(api_router)
