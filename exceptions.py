# exceptions.py
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from log import get_logger

logger = get_logger(__name__)


class FinanceError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FinanceError):
    """Missing or invalid input; the caller must correct it."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(FinanceError):
    """Record absent or not owned by the caller."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(FinanceError):
    status_code = status.HTTP_409_CONFLICT


class TransientError(FinanceError):
    """Storage contention that outlived the retry budget."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InternalError(FinanceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def finance_error_handler(request: Request, exc: FinanceError):
    if isinstance(exc, InternalError):
        logger.error("internal_error", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code, content={"error": "Internal server error"}
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "; ".join(problems) or "Invalid request"},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FinanceError, finance_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
