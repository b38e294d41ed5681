"""
Error handling and sanitization

- LabelBayError subclasses -> status code + {"error", "message", "details"}
- Unhandled exceptions -> logged with traceback, generic message returned
- Validation errors -> kept as-is (safe to expose)
"""
import logging
import traceback
from typing import Dict, Type, Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from labelbay.core.config import settings
from labelbay.core.exceptions import (
    LabelBayError,
    ValidationError,
    NotFoundError,
    ProviderError,
    InsufficientFunds,
    InvalidAmount,
    TransientStoreError,
    QuoteExpiredError,
    PurchaseFailedError,
    ConsistencyError,
    PaymentVerificationError,
)

logger = logging.getLogger(__name__)

# Most specific class first
STATUS_CODES: Dict[Type[LabelBayError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    InsufficientFunds: 402,
    InvalidAmount: 400,
    QuoteExpiredError: 410,
    PaymentVerificationError: 402,
    ProviderError: 502,
    TransientStoreError: 503,
    PurchaseFailedError: 500,
    ConsistencyError: 500,
}

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "sqlite",
    "traceback",
    "file \"",
    "line ",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Sanitize an error message for safe client exposure."""
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 500:
        return message[:500] + "..."

    return message


def status_code_for(exc: LabelBayError) -> int:
    for exc_type in type(exc).__mro__:
        if exc_type in STATUS_CODES:
            return STATUS_CODES[exc_type]
    return 500


async def labelbay_error_handler(request: Request, exc: LabelBayError) -> JSONResponse:
    """Map domain errors to HTTP responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.to_dict()}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")

    # Provider and consistency messages can carry upstream payloads
    message = exc.message if status_code < 500 or isinstance(exc, ProviderError) else sanitize_error_message(exc)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": message,
            "details": exc.details,
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            if settings.DEBUG:
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "internal_error",
                        "message": str(e),
                        "type": type(e).__name__,
                        "error_id": error_id,
                    }
                )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "error_id": error_id,
                }
            )
