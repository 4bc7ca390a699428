"""Security event logging for auth audit trail.

Append-only log to security_events table (no RLS).
"""

from enum import Enum
from typing import Any
from uuid import UUID

from psycopg2.extras import Json

from auth.types import ip_or_none
from clients.postgres_client import PostgresClient
from utils.timezone import now_utc


class SecurityEvent(Enum):
    """Auth security event types."""

    LOGIN_FAILED = "login_failed"
    LOGIN_UNVERIFIED = "login_unverified"
    LOGIN_SUCCEEDED = "login_succeeded"
    TWO_FACTOR_ISSUED = "two_factor_issued"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    TWO_FACTOR_FAILED = "two_factor_failed"
    TRUSTED_DEVICE_CREATED = "trusted_device_created"
    TRUSTED_DEVICE_USED = "trusted_device_used"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    PASSWORD_RESET_FAILED = "password_reset_failed"
    USER_REGISTERED = "user_registered"
    ORGANIZATION_SWITCHED = "organization_switched"
    RATE_LIMITED = "rate_limited"


class SecurityLogger:
    """Append-only security event logger."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: UUID | None = None,
        organization_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log security event to database.

        A client address that is not an IP (unix socket peer) goes into
        details as client_address instead of the ip_address column.
        """
        inet = ip_or_none(ip_address)
        if ip_address and inet is None:
            details = {**(details or {}), "client_address": ip_address}

        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, user_id, organization_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                str(user_id) if user_id else None,
                organization_id,
                inet,
                user_agent,
                Json(details) if details else None,
                now_utc(),
            ),
        )
