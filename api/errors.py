"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from auth.exceptions import (
    AccountNotVerifiedError,
    AuthError,
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    NotOrganizationMemberError,
    OrganizationNotFoundError,
    RateLimitedError,
    SessionExpiredError,
)

logger = logging.getLogger(__name__)

AUTH_ERROR_RESPONSES: dict[type[AuthError], tuple[int, str]] = {
    InvalidCredentialsError: (401, ErrorCodes.INVALID_CREDENTIALS),
    AccountNotVerifiedError: (403, ErrorCodes.ACCOUNT_NOT_VERIFIED),
    RateLimitedError: (429, ErrorCodes.RATE_LIMITED),
    InvalidTwoFactorCodeError: (401, ErrorCodes.INVALID_2FA_CODE),
    InvalidResetTokenError: (400, ErrorCodes.INVALID_RESET_TOKEN),
    DuplicateAccountError: (400, ErrorCodes.ALREADY_EXISTS),
    InvalidTokenError: (401, ErrorCodes.INVALID_TOKEN),
    SessionExpiredError: (401, ErrorCodes.SESSION_EXPIRED),
    NotOrganizationMemberError: (403, ErrorCodes.NOT_ORGANIZATION_MEMBER),
    OrganizationNotFoundError: (400, ErrorCodes.ORGANIZATION_NOT_FOUND),
}


def auth_error_status(exc: AuthError) -> tuple[int, str]:
    """HTTP status and error code for an auth exception (most specific class wins)."""
    for cls in type(exc).__mro__:
        if cls in AUTH_ERROR_RESPONSES:
            return AUTH_ERROR_RESPONSES[cls]
    return 401, ErrorCodes.NOT_AUTHENTICATED


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _describe_validation_errors(exc: RequestValidationError) -> str:
    # Field locations and messages only: submitted values may be passwords
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status_code, code = auth_error_status(exc)
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return JSONResponse(
            status_code=status_code,
            headers=headers,
            content=error_response(code, str(exc), _request_id(request)).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_response(
                ErrorCodes.VALIDATION_ERROR,
                _describe_validation_errors(exc),
                _request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorCodes.INTERNAL_ERROR,
                "An internal error occurred",
                _request_id(request),
            ).model_dump(mode="json"),
        )
