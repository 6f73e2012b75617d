"""
Error taxonomy and FastAPI exception handlers.

Domain code raises `AppError` subclasses; the handlers below turn them (and any
framework or unexpected exception) into the JSON error envelope
`{"error": true, "message": ..., "status_code": ...}`.
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Not authorized"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Access denied"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Resource not found"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    message = "Conflict"


class ValidationFailed(AppError):
    """Input rejected before any mutation; `details` lists each offending field."""

    status_code = status.HTTP_400_BAD_REQUEST
    message = "Validation failed"

    def __init__(self, details: List[dict], message: Optional[str] = None):
        super().__init__(message)
        self.details = details

    @classmethod
    def field(cls, field: str, message: str) -> "ValidationFailed":
        return cls([{"field": field, "message": message}])

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "ValidationFailed":
        return cls(_pydantic_details(exc.errors()))


def _pydantic_details(errors) -> List[dict]:
    return [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in errors
    ]


def _envelope(status_code: int, message, **extra) -> dict:
    return {"error": True, "message": message, "status_code": status_code, **extra}


async def app_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, ValidationFailed):
        logger.info(f"Validation failed on {request.url.path}: {exc.details}")
        content = _envelope(exc.status_code, exc.message, details=exc.details)
    else:
        content = _envelope(exc.status_code, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = exc if isinstance(exc, HTTPException) else HTTPException(status_code=500, detail=str(exc))
    return JSONResponse(
        status_code=http_exc.status_code,
        content=_envelope(http_exc.status_code, http_exc.detail),
        headers=http_exc.headers,
    )


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    errors = _pydantic_details(exc.errors()) if isinstance(exc, (RequestValidationError, ValidationError)) else []
    logger.warning(f"Validation error on {request.url.path}: {errors}")
    code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return JSONResponse(status_code=code, content=_envelope(code, "Validation error", details=errors))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc!s}", exc_info=True)
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=code, content=_envelope(code, "Internal server error"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
