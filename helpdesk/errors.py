"""Error taxonomy shared by the service layer and the HTTP boundary.

Service functions raise these; ``install_error_handlers`` maps them onto
JSON responses so route handlers never build error bodies by hand.
"""
from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from helpdesk.config import get_settings


logger = logging.getLogger(__name__)


class HelpdeskError(Exception):
    status_code = 500

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(HelpdeskError):
    status_code = 400


class AuthenticationError(HelpdeskError):
    status_code = 401


class AuthorizationError(HelpdeskError):
    status_code = 403


class NotFoundError(HelpdeskError):
    status_code = 404


class ReferentialConflict(HelpdeskError):
    status_code = 409


class ConflictError(HelpdeskError):
    status_code = 409


def _validation_message(exc: RequestValidationError) -> tuple[str, str | None]:
    errors = exc.errors()
    if not errors:
        return "Invalid request", None
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or None
    message = first.get("msg", "Invalid value")
    if field:
        message = f"{field}: {message}"
    return message, field


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HelpdeskError)
    async def helpdesk_error_handler(request: Request, exc: HelpdeskError) -> JSONResponse:
        if isinstance(exc, AuthenticationError):
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_dict(),
                headers={"WWW-Authenticate": "Bearer"},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message, field = _validation_message(exc)
        body = {"message": message}
        if field:
            body["field"] = field
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"message": "Operation failed"}
        if not get_settings().is_production:
            body["error"] = str(exc)
            body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=body)
