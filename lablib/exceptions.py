from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for circulation errors."""

    status_code = 400
    category = "invalid"


class ValidationError(LibraryException):
    status_code = 422
    category = "invalid"

    def __init__(self, message: str):
        super().__init__(f"Invalid request: {message}")


class NotFoundError(LibraryException):
    status_code = 404
    category = "not_found"

    def __init__(self, kind: str, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class NotAvailableError(LibraryException):
    status_code = 409
    category = "not_available"

    def __init__(self, key):
        self.key = key
        super().__init__(f"No available copy matches {key}")


class NoOpenLoanError(LibraryException):
    status_code = 409
    category = "no_open_loan"

    def __init__(self, key, user_id):
        self.key = key
        self.user_id = user_id
        super().__init__(f"No open loan of {key} for user {user_id}")


class ConflictError(LibraryException):
    status_code = 409
    category = "conflict"

    def __init__(self, message: str):
        super().__init__(message)


class StoreError(LibraryException):
    """Transaction or connectivity failure; the caller may resubmit."""

    status_code = 503
    category = "retry"

    def __init__(self, operation: str, details: str):
        self.operation = operation
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Invalid request parameters. Please check your input.",
            "category": ValidationError.category,
        },
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    if isinstance(exc, StoreError):
        logger.error(f"Store error: {str(exc)}")
    else:
        logger.warning(f"Library error ({exc.category}): {str(exc)}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "category": exc.category},
    )


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)
