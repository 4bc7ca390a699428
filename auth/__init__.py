"""Authentication and authorization modules."""

from auth.exceptions import (
    AuthError,
    InvalidCredentialsError,
    AccountNotVerifiedError,
    RateLimitedError,
    InvalidTwoFactorCodeError,
    InvalidResetTokenError,
    DuplicateAccountError,
    InvalidTokenError,
    SessionExpiredError,
    NotOrganizationMemberError,
    OrganizationNotFoundError,
)
from auth.types import (
    CredentialRecord,
    TwoFactorChallenge,
    TrustedDevice,
    SessionClaims,
    ResolvedRoles,
    GuardianParticipant,
)
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.passwords import PasswordHasher, normalize_legacy_hash
from auth.rate_limiter import RateLimiter
from auth.two_factor import TwoFactorManager
from auth.trusted_devices import TrustedDeviceManager, parse_device_name
from auth.roles import RoleResolver, resolve_primary_role, ROLE_PRIORITY
from auth.session import SessionTokenIssuer
from auth.password_reset import PasswordResetManager
from auth.notifications import NotificationSender
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.service import AuthService, LoginResult, LoginState, RegistrationResult
from auth.security_middleware import AuthMiddleware
from auth.api import create_auth_router
