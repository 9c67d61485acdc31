"""
Centralized exception handlers for the FastAPI application.

Design:
    - A single generic handler catches all BaseAppError subclasses.
    - HTTP status codes come from the exception's `http_status_code` attribute.
    - Client responses use `to_safe_dict()`; internal details are logged, not sent.
    - Malformed payout creation bodies get the same envelope as business
      validation failures so merchants only parse one shape.
"""

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from app.core.exceptions import BaseAppError
import logging

logger = logging.getLogger(__name__)

ENVELOPE_PATHS = ("/api/payout/create",)


async def app_exception_handler(request: Request, exc: BaseAppError) -> JSONResponse:
    """
    Generic handler for all BaseAppError subclasses.

    - Logs full internal details (to_dict) for debugging.
    - Returns sanitized response (to_safe_dict) to the client.
    """
    if exc.http_status_code >= 500:
        logger.error(
            f"[{exc.__class__.__name__}] {exc.message}",
            extra={"error_details": exc.to_dict()},
        )
    elif exc.http_status_code >= 400:
        logger.warning(
            f"[{exc.__class__.__name__}] {exc.message}",
            extra={"error_details": exc.to_dict()},
        )
    else:
        logger.info(
            f"[{exc.__class__.__name__}] {exc.message}",
            extra={"error_details": exc.to_dict()},
        )

    return JSONResponse(
        status_code=exc.http_status_code,
        content=exc.to_safe_dict(),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 for most routes; the 400 payout envelope for payout creation."""
    if request.url.path in ENVELOPE_PATHS:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
        reason = f"Invalid field '{field}': {first.get('msg', 'invalid value')}"
        logger.warning(f"[RequestValidationError] {reason}")
        return JSONResponse(
            status_code=400,
            content={"external_id": "", "status": 2, "reason": reason, "code": 400},
        )

    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})


def setup_exception_handlers(app: FastAPI):
    """
    Register the generic application error handler and the request
    validation handler.

    Because BaseAppError is the base class, the first handler catches all
    subclasses (PayoutValidationError, StaleStateError, DatabaseError, etc.)
    automatically; no need to register each one individually.
    """
    app.add_exception_handler(BaseAppError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
