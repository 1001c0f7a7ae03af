"""Error normalization and handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from invoiz.core.logging import get_request_id


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


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class VerificationFailedError(AppError):
    """Payment could not be proven; the client may retry later."""
    code = "verification_failed"
    status_code = 400

    def __init__(self, message: str, *, retryable: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class SubscriptionRequiredError(AppError):
    """Route needs an active subscription."""
    code = "subscription_required"
    status_code = 403

    def __init__(self, message: str, *, subscription_info: Optional[dict] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.subscription_info = subscription_info


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class WebhookPayloadError(AppError):
    code = "invalid_payload"
    status_code = 400


class UpstreamUnavailableError(AppError):
    """Payment gateway could not be reached (distinct from a negative answer)."""
    code = "upstream_unavailable"
    status_code = 503


class InconsistentStateError(AppError):
    """Committed state contradicts itself; always a bug, never swallowed."""
    code = "inconsistent_state"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    if isinstance(exc, VerificationFailedError):
        payload["error"]["retryable"] = exc.retryable
    if isinstance(exc, SubscriptionRequiredError):
        payload["subscription_required"] = True
        payload["subscription_info"] = exc.subscription_info
    logger = logging.getLogger("invoiz")
    if isinstance(exc, InconsistentStateError):
        log_level = logging.CRITICAL
    elif exc.status_code >= 500:
        log_level = logging.ERROR
    else:
        log_level = logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    if exc.status_code == 401:
        code = "unauthorized"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("invoiz")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request"
    payload = _error_payload("validation_error", message, rid)
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("invoiz")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
