"""Domain exceptions and error handling utilities."""

import logging
import re

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

# Regex to detect internal paths (Unix/Linux focus for container env)
_PATH_PATTERN = re.compile(r"(\/(?:app|home|var|tmp|usr|etc|opt)\/[\w\-\.\/]+)")


class ServiceError(Exception):
    """Base class for errors surfaced by the ledger and generation pipeline."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "SERVICE_ERROR"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class InvalidSignature(ServiceError):
    """Webhook signature verification failed."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_SIGNATURE"


class PriceResolutionError(ServiceError):
    """No billing price could be resolved from the payment event."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "PRICE_RESOLUTION_ERROR"


class UnknownPlan(ServiceError):
    """No plan is configured for the billing price."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "UNKNOWN_PLAN"


class AccountResolutionError(ServiceError):
    """The payment event does not identify an account."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "ACCOUNT_RESOLUTION_ERROR"


class CheckoutUnavailable(ServiceError):
    """The payment provider could not start a checkout. Please retry."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "CHECKOUT_UNAVAILABLE"


class LedgerUnavailable(ServiceError):
    """The credit ledger is temporarily unavailable. Please retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "LEDGER_UNAVAILABLE"


class IdempotencyConflict(ServiceError):
    """The idempotency key was already used for a different operation."""

    status_code = status.HTTP_409_CONFLICT
    code = "IDEMPOTENCY_CONFLICT"


class InsufficientCredits(ServiceError):
    """Insufficient credits."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "INSUFFICIENT_CREDITS"


class PromptTooShort(ServiceError):
    """The prompt is too short to generate an ad."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "PROMPT_TOO_SHORT"


class GenerationExhausted(ServiceError):
    """Ad generation failed after all attempts."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "GENERATION_EXHAUSTED"

    def __init__(self, message: str | None = None, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class PartialResizeFailure(ServiceError):
    """One or more required ad sizes could not be produced."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "PARTIAL_RESIZE_FAILURE"

    def __init__(self, message: str | None = None, *, failed: dict[str, str] | None = None) -> None:
        self.failed = dict(failed or {})
        super().__init__(message)


def sanitize_message(msg: str) -> str:
    """
    Sanitize string messages to prevent leaking internal details.
    """
    if _PATH_PATTERN.search(msg):
        return _PATH_PATTERN.sub("[INTERNAL_PATH]", msg)
    return msg


def sanitize_error(exc: BaseException) -> str:
    return sanitize_message(str(exc))[:500]


def create_error_response(status_code: int, message: str, error_code: str | None = None) -> JSONResponse:
    content = {"detail": message}
    if error_code:
        content["code"] = error_code
    return JSONResponse(status_code=status_code, content=content)

async def service_exception_handler(request: Request, exc: ServiceError):
    """
    Map domain errors to their HTTP status and machine code.
    """
    if exc.status_code >= 500:
        logger.warning("Service error on %s: %s", request.url.path, exc.code)
    return create_error_response(exc.status_code, sanitize_message(exc.message), exc.code)

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Handle explicit HTTP exceptions (e.g. 404, 403).
    """
    return create_error_response(exc.status_code, sanitize_message(str(exc.detail)))

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors.
    """
    sanitized_errors = []
    for err in exc.errors():
        loc = ".".join([str(x) for x in err.get("loc", [])])
        msg = err.get("msg", "Invalid input")
        sanitized_errors.append(f"{loc}: {msg}")

    error_msg = "; ".join(sanitized_errors)
    return create_error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, f"Validation Error: {sanitize_message(error_msg)}")

async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """
    Handle database errors. Log the full error, return generic message.
    """
    logger.exception("Database error occurred", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "A database error occurred. Please try again later.",
        "DB_ERROR"
    )

async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    """
    logger.exception("Unhandled exception", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An internal server error occurred.",
        "INTERNAL_ERROR"
    )

def register_exception_handlers(app: FastAPI):
    """
    Registrar for all exception handlers.
    """
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
