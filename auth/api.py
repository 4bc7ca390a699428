"""HTTP routes for authentication.

Auth exceptions propagate to the handlers in api/errors.py, which map them to
status codes. Rate-limited routes hand the raw organization header and host to
the service, which resolves the organization after the limiter. Handlers are plain functions so bcrypt and database calls run in
the threadpool instead of the event loop.
"""

from fastapi import APIRouter, Header, Query, Request

from auth.service import AuthService, LoginResult
from auth.types import (
    LoginRequest,
    PasswordResetRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SwitchOrganizationRequest,
    TwoFactorVerifyRequest,
)
from auth.exceptions import InvalidTokenError
from api.base import success_response

RESET_ACK_MESSAGE = "reset_link_sent_if_exists"


def _client_address(request: Request) -> str | None:
    """Peer address as reported by the server, which may not be an IP (unix socket)."""
    return request.client.host if request.client else None


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _session_payload(result: LoginResult) -> dict:
    """Response body for a successful login or 2FA verification."""
    payload = {
        "requires_2fa": False,
        "message": "login_successful",
        "token": result.token,
        "user_id": str(result.user_id),
        "user_full_name": result.full_name,
        "organization_id": result.organization_id,
        "user_role": result.roles.primary_role,
        "user_roles": result.roles.role_names,
        "user_permissions": result.roles.permissions,
        "guardian_participants": [g.model_dump() for g in result.guardian_participants],
    }
    if result.device_token:
        payload["device_token"] = result.device_token
    return payload


def create_auth_router(auth_service: AuthService) -> APIRouter:
    """Create auth router with injected service."""
    router = APIRouter(tags=["auth"])

    def organization_for(request: Request, explicit: str | int | None = None) -> int:
        """Organization from explicit value, x-organization-id header, or request host."""
        if explicit in (None, ""):
            explicit = request.headers.get("x-organization-id")
        return auth_service.resolve_organization_id(explicit, request.url.hostname)

    @router.post("/login")
    def login(
        request: Request,
        body: LoginRequest,
        x_device_token: str | None = Header(default=None),
    ):
        """Password login.

        Returns either requires_2fa=True (code emailed, no token) or the
        session payload when the device is trusted.
        """
        result = auth_service.login(
            email=body.email,
            password=body.password,
            organization_id=request.headers.get("x-organization-id"),
            ip_address=_client_address(request),
            user_agent=request.headers.get("User-Agent"),
            device_token=x_device_token,
            hostname=request.url.hostname,
        )

        if result.requires_2fa:
            return success_response(
                {"requires_2fa": True, "message": "2fa_code_sent", "email": result.email},
                _request_id(request),
            )
        return success_response(_session_payload(result), _request_id(request))

    @router.post("/verify-2fa")
    def verify_two_factor(request: Request, body: TwoFactorVerifyRequest):
        """Verify the emailed code. Returns the session payload plus a device_token."""
        result = auth_service.verify_two_factor(
            email=body.email,
            code=body.code,
            organization_id=request.headers.get("x-organization-id"),
            ip_address=_client_address(request),
            user_agent=request.headers.get("User-Agent"),
            hostname=request.url.hostname,
        )
        return success_response(_session_payload(result), _request_id(request))

    @router.post("/register", status_code=201)
    def register(request: Request, body: RegisterRequest):
        """Create an account. Staff accounts wait for administrator approval."""
        result = auth_service.register(
            email=body.email,
            password=body.password,
            full_name=body.full_name,
            requested_type=body.user_type,
            organization_id=organization_for(request),
            ip_address=_client_address(request),
        )
        message = "registration_successful" if result.is_verified else "registration_successful_await_verification"
        return success_response(
            {"user_id": str(result.user_id), "is_verified": result.is_verified, "message": message},
            _request_id(request),
        )

    @router.post("/request-password-reset")
    def request_password_reset(request: Request, body: PasswordResetRequest):
        """Email a reset link. Same response whether or not the account exists."""
        auth_service.request_password_reset(
            email=body.email,
            organization_id=request.headers.get("x-organization-id"),
            ip_address=_client_address(request),
            hostname=request.url.hostname,
        )
        return success_response({"message": RESET_ACK_MESSAGE}, _request_id(request))

    @router.post("/reset-password")
    def reset_password(request: Request, body: ResetPasswordRequest):
        """Set a new password with a reset token."""
        auth_service.reset_password(
            token=body.token,
            new_password=body.new_password,
            ip_address=_client_address(request),
        )
        return success_response({"message": "password_reset_successful"}, _request_id(request))

    @router.post("/verify-session")
    def verify_session(request: Request):
        """Return identity from the bearer token (validated by AuthMiddleware)."""
        claims = request.state.claims
        return success_response(
            {
                "user_id": str(claims.user_id) if claims.user_id else None,
                "role": claims.primary_role,
                "organization_id": claims.organization_id,
            },
            _request_id(request),
        )

    @router.post("/switch-organization")
    def switch_organization(request: Request, body: SwitchOrganizationRequest):
        """Issue a token for another organization the user belongs to."""
        claims = request.state.claims
        if claims.user_id is None:
            raise InvalidTokenError("Organization switch requires a user token")

        token = auth_service.switch_organization(
            claims,
            body.organization_id,
            ip_address=_client_address(request),
        )
        return success_response(
            {"token": token, "organization_id": body.organization_id},
            _request_id(request),
        )

    @router.get("/organization-token")
    def organization_token(request: Request, organization_id: int | None = Query(default=None)):
        """Anonymous token carrying only the resolved organization id."""
        resolved = organization_for(request, organization_id)
        return success_response(
            {"token": auth_service.issue_organization_token(resolved), "organization_id": resolved},
            _request_id(request),
        )

    @router.post("/logout")
    def logout(request: Request):
        """Tokens are stateless; the client discards its token."""
        return success_response({"message": "logged_out"}, _request_id(request))

    return router
