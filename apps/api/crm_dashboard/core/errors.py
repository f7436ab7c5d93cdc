from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from crm_dashboard.context import get_correlation_id


logger = logging.getLogger("crm_dashboard.errors")


class CRMError(Exception):
    """Base class for failures that map onto a client-visible HTTP status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(CRMError):
    """Input is malformed or violates a field rule."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class UnauthorizedError(CRMError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


class ForbiddenError(CRMError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(CRMError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(CRMError):
    """Uniqueness violation, or a delete refused because the row is still referenced."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload))


def _validation_details(exc: RequestValidationError) -> list[dict[str, str]]:
    details: list[dict[str, str]] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"path": ".".join(location), "message": str(error.get("msg", ""))})
    return details


async def _handle_crm_error(request: Request, exc: CRMError) -> JSONResponse:
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        "request.failed",
        extra={"code": exc.code, "status_code": exc.status_code, "path": request.url.path, "error": exc.message},
    )
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = _validation_details(exc)
    logger.info("request.invalid", extra={"path": request.url.path, "count": len(details)})
    return error_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        code=ValidationError.code,
        message="Validation failed",
        details=details,
    )


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = error_response(
        request,
        status_code=exc.status_code,
        code=f"http_{exc.status_code}",
        message=str(exc.detail),
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.error("request.unhandled", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="internal_error",
        message="Internal Server Error",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CRMError, _handle_crm_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _handle_unexpected)
