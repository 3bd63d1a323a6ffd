"""
Error taxonomy and FastAPI exception handlers.

Every error raised by the service layer derives from TollFreeSMSError and
carries an HTTP status, a machine-readable code and optional details.
Capacity exhaustion has no error class: it is reported as a "queued" success.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class TollFreeSMSError(Exception):
    """Base exception for the service."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Any] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class AuthenticationError(TollFreeSMSError):
    """Missing or invalid caller token, or bad webhook signature."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Any] = None):
        super().__init__(message, code="AUTHENTICATION_FAILED", status_code=401, details=details)


class AuthorizationError(TollFreeSMSError):
    """Caller is authenticated but does not own the target business."""

    def __init__(self, message: str = "Not allowed to access this business", details: Optional[Any] = None):
        super().__init__(message, code="FORBIDDEN", status_code=403, details=details)


class ValidationError(TollFreeSMSError):
    """
    Malformed or missing onboarding fields.

    details is a list of {"field": ..., "message": ...} entries, one per
    offending field.
    """

    def __init__(self, message: str = "Validation error", details: Optional[Any] = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=422, details=details)


class NotFoundError(TollFreeSMSError):
    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(message, code="NOT_FOUND", status_code=404, details=details)


class ConflictError(TollFreeSMSError):
    """Request is valid but the business is not in a state that allows it."""

    def __init__(self, message: str = "Conflict", details: Optional[Any] = None):
        super().__init__(message, code="CONFLICT", status_code=409, details=details)


class CarrierError(TollFreeSMSError):
    """
    The carrier API rejected a request.

    The carrier's own message is kept verbatim for operator diagnosis and
    the decoded response payload goes into details.
    """

    def __init__(
        self,
        message: str = "Carrier request failed",
        details: Optional[Any] = None,
        carrier_status: Optional[int] = None,
    ):
        super().__init__(message, code="CARRIER_ERROR", status_code=502, details=details)
        self.carrier_status = carrier_status


def error_body(exc: TollFreeSMSError) -> dict:
    return {"error": exc.message, "code": exc.code, "details": exc.details}


def add_exception_handlers(app: FastAPI) -> None:
    """
    Registers exception handlers with the FastAPI app.
    """

    @app.exception_handler(TollFreeSMSError)
    async def service_exception_handler(request: Request, exc: TollFreeSMSError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """
        Handles malformed request envelopes (missing businessId etc.).
        """
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={"error": "Input validation failed", "code": "VALIDATION_ERROR", "details": details},
        )
