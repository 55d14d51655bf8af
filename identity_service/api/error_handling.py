"""Exception handlers rendering failures in the ``{success, message, code}`` envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from ..errors import AuthError, ErrorCode

logger = logging.getLogger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "TOO_MANY_REQUESTS",
}


def _error_response(status_code: int, message: str, code: str, detail: object | None = None) -> JSONResponse:
    content: dict = {"success": False, "message": message, "code": code}
    if detail is not None:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI, *, expose_internal_errors: bool = False) -> None:
    """Install handlers mapping domain, validation and unexpected errors to stable codes."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
        logger.info(
            "%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code.value
        )
        return _error_response(exc.status_code, exc.message, exc.code.value)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
            message = f"{field}: {first.get('msg', 'invalid value')}"
        return _error_response(400, message, ErrorCode.VALIDATION_ERROR.value)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        code = _STATUS_TO_CODE.get(exc.status_code, "ERROR")
        return _error_response(exc.status_code, str(exc.detail), code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if expose_internal_errors else "Internal Server Error"
        return _error_response(500, message, "INTERNAL_ERROR")
