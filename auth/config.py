"""Authentication configuration."""

from pydantic import BaseModel, Field


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    All durations are in their natural units (minutes for short durations,
    hours or days for longer ones) to make configuration intuitive.
    """

    # Deployment
    environment: str = Field(
        default="production",
        description="Deployment environment; anything but 'production' relaxes the reset limiter",
    )

    # Passwords
    bcrypt_rounds: int = Field(
        default=10,
        description="bcrypt work factor for newly hashed passwords",
        ge=4,
        le=15,
    )

    # Two-factor challenges
    two_factor_code_expiry_minutes: int = Field(
        default=10,
        description="How long an emailed verification code stays valid",
        ge=1,
        le=60,
    )
    two_factor_max_attempts: int = Field(
        default=5,
        description="Verification attempts allowed per challenge",
        ge=1,
        le=10,
    )

    # Trusted devices
    trusted_device_expiry_days: int = Field(
        default=90,
        description="How long a device stays exempt from 2FA after verification",
        ge=1,
        le=365,
    )

    # Session tokens
    session_expiry_days: int = Field(
        default=7,
        description="Lifetime of tokens issued by login and 2FA verification",
        ge=1,
        le=30,
    )
    organization_switch_expiry_hours: int = Field(
        default=24,
        description="Lifetime of tokens issued by an organization switch",
        ge=1,
        le=168,
    )
    organization_token_expiry_days: int = Field(
        default=7,
        description="Lifetime of organization-only (anonymous) tokens",
        ge=1,
        le=30,
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="Symmetric JWT signing algorithm",
        pattern=r"^HS(256|384|512)$",
    )

    # Password reset
    reset_token_expiry_minutes: int = Field(
        default=60,
        description="How long a password reset link remains valid",
        ge=5,
        le=1440,
    )

    # Rate limiting
    login_rate_limit_attempts: int = Field(
        default=6,
        description="Login and 2FA attempts per client IP per window",
        ge=2,
        le=100,
    )
    login_rate_limit_window_minutes: int = Field(
        default=15,
        description="Login rate limit window duration",
        ge=1,
        le=1440,
    )
    reset_rate_limit_attempts: int = Field(
        default=5,
        description="Password reset requests per client IP per window in production",
        ge=1,
        le=100,
    )
    reset_rate_limit_attempts_non_production: int = Field(
        default=100,
        description="Password reset requests per client IP per window elsewhere",
        ge=1,
        le=10000,
    )
    reset_rate_limit_window_minutes: int = Field(
        default=60,
        description="Password reset rate limit window duration",
        ge=1,
        le=1440,
    )

    # Application
    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL for password reset links",
    )
    app_name: str = Field(
        default="Membership",
        description="Application name for emails",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def effective_reset_rate_limit_attempts(self) -> int:
        """Reset cap for the current environment."""
        if self.is_production:
            return self.reset_rate_limit_attempts
        return self.reset_rate_limit_attempts_non_production
