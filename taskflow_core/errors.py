"""
Error Taxonomy and Central Translator
=====================================

Every failure that leaves a handler is turned into one of the ``APIError``
subclasses below and serialized into the standard envelope:

    {"success": false, "message": ..., "errors": [...], "statusCode": ...}

Store-layer errors (integrity/format), schema validation errors and token
errors are mapped here so the wire format does not depend on where the
failure came from.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import DataError, IntegrityError, StatementError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AuthFailureReason(str, Enum):
    """Why the authorization gate rejected a request."""
    NO_TOKEN = "no_token"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    REVOKED = "revoked"
    UNKNOWN_IDENTITY = "unknown_identity"
    INVALID_CREDENTIALS = "invalid_credentials"


class APIError(Exception):
    """Base class for errors that map onto an HTTP envelope."""

    status_code = 500
    default_message = "Server Error"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[List[str]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message or self.default_message
        self.errors = list(errors or [])
        self.data = data
        self.headers = headers
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "message": self.message,
            "errors": self.errors,
            "statusCode": self.status_code,
        }
        if self.data is not None:
            body["data"] = self.data
        return body


class ValidationFailure(APIError):
    status_code = 400
    default_message = "Validation failed"


class AuthenticationFailure(APIError):
    status_code = 401
    default_message = "Not authorized to access this route"

    def __init__(self, reason: AuthFailureReason, message: Optional[str] = None, **kwargs):
        self.reason = reason
        kwargs.setdefault("headers", {"WWW-Authenticate": "Bearer"})
        super().__init__(message, **kwargs)


class NotFound(APIError):
    status_code = 404
    default_message = "Resource not found"


class NotFoundOrDenied(NotFound):
    """Ownership failure. Serialized exactly like a missing resource."""


class DuplicateResource(APIError):
    status_code = 400
    default_message = "Duplicate field value entered"


class TagInUse(APIError):
    status_code = 400
    default_message = "Tag is in use"


class RateLimited(APIError):
    status_code = 429
    default_message = "Too many requests. Please try again later"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(
            message,
            data={"retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


class ServerFault(APIError):
    status_code = 500
    default_message = "Server Error"


# ============================================================================
# TRANSLATION
# ============================================================================

def _format_validation_errors(errors: List[Dict[str, Any]]) -> List[str]:
    messages = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        message = error.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{'.'.join(location)}: {message}" if location else message)
    return messages


def translate_exception(exc: Exception) -> APIError:
    """Map any exception raised while handling a request onto the taxonomy."""
    if isinstance(exc, APIError):
        return exc

    if isinstance(exc, (RequestValidationError, ValidationError)):
        return ValidationFailure(errors=_format_validation_errors(exc.errors()))

    if isinstance(exc, IntegrityError):
        return DuplicateResource()

    if isinstance(exc, (DataError, StatementError)):
        return ValidationFailure("Invalid value for field", errors=[str(getattr(exc, "orig", exc))])

    # Token errors normally surface through the gate, but keep the mapping
    # here for anything that calls the token service directly.
    from taskflow_core.auth import TokenError, TokenErrorKind

    if isinstance(exc, TokenError):
        reason = {
            TokenErrorKind.EXPIRED: AuthFailureReason.EXPIRED,
            TokenErrorKind.REVOKED: AuthFailureReason.REVOKED,
        }.get(exc.kind, AuthFailureReason.MALFORMED)
        return AuthenticationFailure(reason, exc.message)

    if isinstance(exc, StarletteHTTPException):
        if exc.status_code == 404:
            return NotFound(str(exc.detail))
        error = APIError(str(exc.detail))
        error.status_code = exc.status_code
        return error

    logger.exception("Unhandled error: %s", exc)
    return ServerFault()


def error_response(error: APIError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=jsonable_encoder(error.to_dict()),
        headers=error.headers,
    )


def success_response(
    data: Optional[Any] = None,
    message: Optional[str] = None,
    status_code: int = 200,
) -> JSONResponse:
    """Build the standard success envelope."""
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def register_exception_handlers(app: FastAPI) -> None:
    """Route every exception through ``translate_exception``."""

    async def handle_api_error(request: Request, exc: Exception) -> JSONResponse:
        error = translate_exception(exc)
        if error.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, error.message)
        else:
            logger.info(
                "%s %s rejected with %s: %s",
                request.method, request.url.path, error.status_code, error.message,
            )
        return error_response(error)

    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405) and exc.detail in ("Not Found", "Method Not Allowed"):
            return error_response(NotFound(f"Route {request.url.path} not found"))
        return await handle_api_error(request, exc)

    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_api_error)
    app.add_exception_handler(ValidationError, handle_api_error)
    app.add_exception_handler(IntegrityError, handle_api_error)
    app.add_exception_handler(StatementError, handle_api_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_api_error)
