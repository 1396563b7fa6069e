"""
Squad Engine - Error Handlers
Formats engine errors and request problems into structured JSON responses.
"""
import logging
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from squad_engine.core.errors import ErrorCode, GameError

logger = logging.getLogger("squad_engine.errors")

STATUS_ERROR_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    403: ErrorCode.PERMISSION_DENIED,
    404: ErrorCode.NOT_FOUND,
    422: ErrorCode.VALIDATION_ERROR,
    500: ErrorCode.UNKNOWN,
}


def _error_id() -> str:
    """Short id to correlate a response with the log line."""
    return str(uuid.uuid4())[:8]


def _envelope(
    code: ErrorCode,
    message: str,
    details: Dict[str, Any],
    recoverable: bool,
    recovery_hint: Any,
    error_id: str,
) -> Dict[str, Any]:
    return {
        "error": {
            "code": code.value,
            "message": message,
            "details": details,
            "recoverable": recoverable,
            "recovery_hint": recovery_hint,
            "error_id": error_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


def setup_error_handlers(app: FastAPI, debug: bool = False):
    """
    Register exception handlers on the application.

    GameError subclasses keep their own status and code; request validation
    failures become 422 VALIDATION_ERROR; anything else is a 500.
    """

    @app.exception_handler(GameError)
    async def game_error_handler(request: Request, exc: GameError):
        error_id = _error_id()
        logger.warning(
            f"[{error_id}] GameError: {exc.code.value} - {exc.message}",
            extra={
                "error_id": error_id,
                "error_code": exc.code.value,
                "path": str(request.url.path),
            },
        )

        response_data = exc.to_dict()
        response_data["error"]["error_id"] = error_id
        response_data["error"]["timestamp"] = datetime.now(timezone.utc).isoformat()
        return JSONResponse(status_code=exc.http_status, content=response_data)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error.get("loc", []))
            errors.append({
                "field": field,
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "validation_error"),
            })

        return JSONResponse(
            status_code=422,
            content=_envelope(
                ErrorCode.VALIDATION_ERROR,
                "Request validation failed",
                {"errors": errors},
                True,
                "Check the request data and correct any invalid fields",
                _error_id(),
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = STATUS_ERROR_CODES.get(exc.status_code, ErrorCode.UNKNOWN)
        return JSONResponse(
            status_code=exc.status_code,
            content=_envelope(
                code,
                str(exc.detail) if exc.detail else "An error occurred",
                {},
                exc.status_code < 500,
                None,
                _error_id(),
            ),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        error_id = _error_id()
        logger.error(
            f"[{error_id}] Unhandled exception: {type(exc).__name__}: {exc}",
            extra={
                "error_id": error_id,
                "path": str(request.url.path),
                "method": request.method,
            },
            exc_info=True,
        )

        content = _envelope(
            ErrorCode.UNKNOWN,
            "An unexpected error occurred",
            {},
            False,
            "Please try again",
            error_id,
        )
        if debug:
            content["error"]["debug"] = {
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
                "traceback": traceback.format_exc().split("\n"),
            }
        return JSONResponse(status_code=500, content=content)

    return app
