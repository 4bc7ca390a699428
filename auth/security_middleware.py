"""Security middleware for FastAPI - bearer token validation and request context."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from auth.session import SessionTokenIssuer
from auth.exceptions import InvalidTokenError, SessionExpiredError
from api.base import error_response, ErrorCodes
from utils.user_context import set_request_context, clear_request_context


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that validates the bearer token and sets request context.

    For protected routes:
    1. Extracts the token from the 'Authorization: Bearer' header
    2. Verifies signature and expiry via SessionTokenIssuer
    3. Sets claims in request.state and user/organization context (for RLS)
    4. Clears context after request completes

    Public paths bypass authentication entirely.
    """

    PUBLIC_PATHS = [
        "/auth/login",
        "/auth/verify-2fa",
        "/auth/register",
        "/auth/request-password-reset",
        "/auth/reset-password",
        "/auth/organization-token",
        "/auth/logout",
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, token_issuer: SessionTokenIssuer):
        super().__init__(app)
        self._token_issuer = token_issuer

    def _is_public_path(self, path: str) -> bool:
        """Check if path is in public paths list."""
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path + "/"):
                return True
        return False

    def _unauthorized(self, request: Request, code: str, message: str) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=401,
            content=error_response(code, message, request_id).model_dump(mode="json"),
        )

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        path = request.url.path

        # Skip auth for public paths
        if self._is_public_path(path):
            return await call_next(request)

        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return self._unauthorized(request, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")

        try:
            claims = self._token_issuer.verify(token.strip())
        except SessionExpiredError:
            return self._unauthorized(request, ErrorCodes.SESSION_EXPIRED, "Session has expired")
        except InvalidTokenError:
            return self._unauthorized(request, ErrorCodes.INVALID_TOKEN, "Invalid token")

        # Set user context for RLS
        set_request_context(claims.user_id, claims.organization_id)
        request.state.claims = claims
        request.state.user_id = claims.user_id

        try:
            response = await call_next(request)
            return response
        finally:
            # Always clear context
            clear_request_context()
