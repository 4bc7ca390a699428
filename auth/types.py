"""Pydantic models for auth domain."""

import ipaddress
import re
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator


def normalize_email(value: str) -> str:
    """Canonical email form: trimmed and lowercased."""
    return value.strip().lower()


def ip_or_none(address: str | None) -> str | None:
    """The address if it parses as IPv4/IPv6, else None (unix socket peers, proxies)."""
    if not address:
        return None
    try:
        ipaddress.ip_address(address)
        return address
    except ValueError:
        return None


class CredentialRecord(BaseModel):
    """A user's stored credentials within one organization."""

    id: UUID
    organization_id: int
    email: EmailStr
    password_hash: str
    is_verified: bool  # Required - fail closed, no default
    full_name: str

    model_config = {"from_attributes": True}


class TwoFactorChallenge(BaseModel):
    """A single issued verification code awaiting a match."""

    id: UUID
    user_id: UUID
    organization_id: int
    code_hash: str = Field(..., description="SHA-256 hex of the 6-digit code")
    created_at: datetime
    expires_at: datetime
    attempts: int = Field(..., ge=0)
    verified: bool  # Required - fail closed, no default
    ip_address: str | None = None
    user_agent: str | None = None

    model_config = {"from_attributes": True}


class TrustedDevice(BaseModel):
    """A device that passed 2FA and is exempt from challenges until expiry."""

    user_id: UUID
    organization_id: int
    device_token: str
    device_fingerprint: str
    device_name: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_active: bool

    model_config = {"from_attributes": True}


class TokenType(str, Enum):
    SESSION = "session"
    ORGANIZATION_SWITCH = "organization_switch"
    ORGANIZATION = "organization"


class SessionClaims(BaseModel):
    """Claims carried by a signed session token."""

    user_id: UUID | None = None
    organization_id: int
    primary_role: str | None = None
    role_names: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime


class ResolvedRoles(BaseModel):
    """A user's roles and permissions within one organization."""

    role_names: list[str]
    permissions: list[str]
    primary_role: str


class GuardianParticipant(BaseModel):
    """A participant linked to the user's email as guardian but not yet claimed."""

    guardian_id: int
    participant_id: int
    first_name: str
    last_name: str

    model_config = {"from_attributes": True}


# --- Request payloads ---

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


def validate_strong_password(value: str) -> str:
    """8-255 characters with at least one uppercase, one lowercase and one digit."""
    if not 8 <= len(value) <= 255:
        raise ValueError("Password must be between 8 and 255 characters")
    if not (_UPPER.search(value) and _LOWER.search(value) and _DIGIT.search(value)):
        raise ValueError("Password must contain an uppercase letter, a lowercase letter and a digit")
    return value


class _EmailPayload(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        if isinstance(value, str):
            return normalize_email(value)
        return value


class LoginRequest(_EmailPayload):
    """Request payload for login."""

    password: str = Field(..., min_length=1, max_length=255)


class TwoFactorVerifyRequest(_EmailPayload):
    """Request payload for 2FA verification."""

    code: str = Field(..., pattern=r"^\d{6}$")


class RegisterRequest(_EmailPayload):
    """Request payload for account registration."""

    password: str
    full_name: str = Field(..., min_length=1, max_length=200)
    user_type: str = Field(default="parent", max_length=50)

    @field_validator("password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        return validate_strong_password(value)

    @field_validator("full_name")
    @classmethod
    def _strip_full_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Full name is required")
        return value


class PasswordResetRequest(_EmailPayload):
    """Request payload for a password reset link."""


class ResetPasswordRequest(BaseModel):
    """Request payload for setting a new password with a reset token."""

    token: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        return validate_strong_password(value)


class SwitchOrganizationRequest(BaseModel):
    """Request payload for switching the active organization."""

    organization_id: int = Field(..., gt=0)
