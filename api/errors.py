"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from auth.exceptions import AuthError
from core.exceptions import InvoicingError

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.INVALID_STATUS_TRANSITION: 409,
    ErrorCodes.INVOICE_ALREADY_PAID: 409,
    ErrorCodes.INVOICE_IMMUTABLE: 409,
    ErrorCodes.CONFLICT: 409,
    ErrorCodes.PLAN_LIMIT: 403,
    ErrorCodes.VALIDATION_FAILURE: 422,
    ErrorCodes.UPSTREAM_UNAVAILABLE: 502,
}


def _json(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(code, message, details).model_dump(mode="json"),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(InvoicingError)
    async def invoicing_error_handler(request: Request, exc: InvoicingError):
        status_code = STATUS_BY_CODE.get(exc.code, 400)
        if status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return _json(status_code, exc.code, exc.message, exc.context)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return _json(401, ErrorCodes.NOT_AUTHENTICATED, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _json(400, ErrorCodes.INVALID_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return _json(422, ErrorCodes.VALIDATION_ERROR, str(exc.errors()))

    # Handlers build pydantic models from the untyped ``data`` payload
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _json(422, ErrorCodes.VALIDATION_ERROR, str(exc.errors(include_url=False)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return _json(500, ErrorCodes.INTERNAL_ERROR, "An internal error occurred")
