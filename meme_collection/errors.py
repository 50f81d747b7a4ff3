"""Error types and the JSON response envelope.

Every JSON response has the shape::

    {"status": {"success": bool, "error": {"code": str, "message": str} | null},
     "data": ...}
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .constants import (
    INTERNAL_ERROR,
    INVALID_INPUT,
    METHOD_NOT_ALLOWED,
    NO_MEMES_FOUND,
    NOT_FOUND,
    UNAUTHORIZED,
)

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500
    code = INTERNAL_ERROR
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class UnauthorizedError(ApiError):
    status_code = 401
    code = UNAUTHORIZED
    message = "Authentication required"


class NotFoundError(ApiError):
    status_code = 404
    code = NOT_FOUND
    message = "Meme not found"


class InvalidInputError(ApiError):
    status_code = 400
    code = INVALID_INPUT
    message = "Invalid input"


class NoMemesFoundError(ApiError):
    status_code = 404
    code = NO_MEMES_FOUND
    message = "No memes in your collection yet"


def envelope(data: Any = None) -> dict:
    return {"status": {"success": True, "error": None}, "data": data}


def error_envelope(code: str, message: str) -> dict:
    return {"status": {"success": False, "error": {"code": code, "message": message}}, "data": None}


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    first = errors[0]
    loc = [str(p) for p in first.get('loc', ()) if p not in ('body', 'query', 'path')]
    msg = str(first.get('msg', 'invalid value'))
    # pydantic prefixes messages from custom validators
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    if loc:
        return f"{'.'.join(loc)}: {msg}"
    return msg


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    logger.debug("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(status_code=exc.status_code, content=error_envelope(exc.code, exc.message))


_HTTP_STATUS_CODES = {
    401: UNAUTHORIZED,
    404: NOT_FOUND,
    405: METHOD_NOT_ALLOWED,
}


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap errors raised by the framework itself (unknown route, wrong method)."""
    code = _HTTP_STATUS_CODES.get(exc.status_code)
    if code is None:
        code = INTERNAL_ERROR if exc.status_code >= 500 else INVALID_INPUT
    logger.debug("%s %s -> %s %s", request.method, request.url.path, exc.status_code, code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _describe_validation_error(exc)
    logger.debug("Rejected input on %s %s: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content=error_envelope(INVALID_INPUT, message))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_envelope(INTERNAL_ERROR, "Internal server error"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
