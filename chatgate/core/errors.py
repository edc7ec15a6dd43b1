"""Error taxonomy and exception handlers.

Every failure the governance pipeline can produce maps to one AppError
subclass with a stable `code` and HTTP status. Handlers render them into
a single envelope: {"error": {"code", "message", "request_id", ...}, "detail"}.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from chatgate.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def payload_extra(self) -> Dict[str, Any]:
        """Additional fields merged into the error envelope."""
        return {}


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class FeatureForbiddenError(AppError):
    """Raised when the caller's plan does not grant a feature or backend."""
    code = "feature_forbidden"
    status_code = 403

    def __init__(self, message: str, *, feature: str, **kwargs):
        super().__init__(message, **kwargs)
        self.feature = feature

    def payload_extra(self) -> Dict[str, Any]:
        return {"feature": self.feature}


class QuotaExceededError(AppError):
    """Raised when a usage quota blocks the request.

    `kind` names the violated quota; `limits` is the caller's current
    limits snapshot so clients can render exact counters.
    """
    code = "quota_exceeded"
    status_code = 429

    DAILY_MESSAGE_LIMIT = "daily_message_limit"
    ACTIVE_CONVERSATION_LIMIT = "active_conversation_limit"

    def __init__(self, message: str, *, kind: str, limits: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.limits = limits or {}

    def payload_extra(self) -> Dict[str, Any]:
        return {"kind": self.kind, "limits": self.limits}


class GenerationError(AppError):
    """Model backend unreachable, failed, or returned an unusable payload."""
    code = "generation_failed"
    status_code = 502

    def __init__(self, message: str, *, backend: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.backend = backend


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if extra:
        error.update(extra)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    message = exc.message
    if isinstance(exc, GenerationError):
        # Backend detail stays in the logs
        message = "The model backend could not produce a response"
    payload = _error_payload(exc.code, message, rid, exc.payload_extra())
    logger = logging.getLogger("chatgate")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    payload = _error_payload(ValidationError.code, message, rid)
    logging.getLogger("chatgate").warning(
        "request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    if exc.status_code == 404:
        code = "not_found"
    elif exc.status_code == 401:
        code = "unauthorized"
    else:
        code = "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("chatgate")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("chatgate")
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
