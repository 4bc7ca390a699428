"""Signed session tokens.

Tokens are stateless HS256 JWTs (PyJWT). Nothing is stored server side, so a
token stays valid until it expires.
"""

import logging
from datetime import timedelta
from uuid import UUID

import jwt
from pydantic import ValidationError

from auth.config import AuthConfig
from auth.exceptions import InvalidTokenError, SessionExpiredError
from auth.types import ResolvedRoles, SessionClaims, TokenType
from utils.timezone import from_timestamp, now_utc

logger = logging.getLogger(__name__)


class SessionTokenIssuer:
    """Mint and verify session tokens."""

    def __init__(self, secret: str, config: AuthConfig):
        if not secret:
            raise ValueError("JWT secret is required")
        self._secret = secret
        self._config = config

    def issue(
        self,
        user_id: UUID | None,
        organization_id: int,
        primary_role: str | None,
        role_names: list[str],
        permissions: list[str],
        ttl: timedelta,
        token_type: TokenType = TokenType.SESSION,
    ) -> str:
        """Sign a token carrying identity, organization, roles and permissions."""
        now = now_utc()
        payload = {
            "user_id": str(user_id) if user_id is not None else None,
            "organization_id": organization_id,
            "user_role": primary_role,
            "role_names": list(role_names),
            "permissions": list(permissions),
            "token_type": token_type.value,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._config.jwt_algorithm)

    def issue_login_token(self, user_id: UUID, organization_id: int, roles: ResolvedRoles) -> str:
        """Full session token after login or 2FA verification."""
        return self.issue(
            user_id,
            organization_id,
            roles.primary_role,
            roles.role_names,
            roles.permissions,
            ttl=timedelta(days=self._config.session_expiry_days),
        )

    def issue_organization_switch_token(self, user_id: UUID, organization_id: int, roles: ResolvedRoles) -> str:
        """Shorter-lived token for a user acting in another organization."""
        return self.issue(
            user_id,
            organization_id,
            roles.primary_role,
            roles.role_names,
            roles.permissions,
            ttl=timedelta(hours=self._config.organization_switch_expiry_hours),
            token_type=TokenType.ORGANIZATION_SWITCH,
        )

    def issue_organization_token(self, organization_id: int) -> str:
        """Anonymous token carrying only an organization id."""
        return self.issue(
            None,
            organization_id,
            None,
            [],
            [],
            ttl=timedelta(days=self._config.organization_token_expiry_days),
            token_type=TokenType.ORGANIZATION,
        )

    def verify(self, token: str) -> SessionClaims:
        """Check signature and expiry and return the claims.

        Raises:
            SessionExpiredError: If the token has expired.
            InvalidTokenError: If the token is malformed, tampered or incomplete.
        """
        if not token:
            raise InvalidTokenError("Token is required")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._config.jwt_algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise SessionExpiredError("Session expired")
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected session token: {e}")
            raise InvalidTokenError("Invalid token")

        try:
            return SessionClaims(
                user_id=payload.get("user_id"),
                organization_id=payload.get("organization_id"),
                primary_role=payload.get("user_role"),
                role_names=payload.get("role_names") or [],
                permissions=payload.get("permissions") or [],
                token_type=payload.get("token_type"),
                issued_at=from_timestamp(payload["iat"]),
                expires_at=from_timestamp(payload["exp"]),
            )
        except ValidationError:
            raise InvalidTokenError("Token claims are incomplete")
