"""Typed exceptions for auth failures."""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class InvalidCredentialsError(AuthError):
    """Email or password is wrong. Raised for an unknown email and a bad password alike."""

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class AccountNotVerifiedError(AuthError):
    """Credentials are correct but an administrator has not approved the account yet."""


class RateLimitedError(AuthError):
    """Too many attempts. Client should wait before retrying."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limited. Retry after {retry_after_seconds} seconds.")


class InvalidTwoFactorCodeError(AuthError):
    """Verification code is wrong, expired, exhausted or already used."""


class InvalidResetTokenError(AuthError):
    """Password reset token is unknown, expired or already consumed."""


class DuplicateAccountError(AuthError):
    """An account with this email already exists."""


class InvalidTokenError(AuthError):
    """Session token signature or structure is invalid."""


class SessionExpiredError(AuthError):
    """Session token has expired and user must re-authenticate."""


class NotOrganizationMemberError(AuthError):
    """User has no membership in the requested organization."""


class OrganizationNotFoundError(AuthError):
    """The request could not be mapped to an organization."""
