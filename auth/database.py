"""Database operations for authentication.

Uses auth tables: users, user_organizations, roles, role_permissions,
permissions, two_factor_codes, trusted_devices, organization_domains and
the guardian tables. These are read before user context is established.

Role membership lives in user_organizations.role_ids, a JSONB array of
roles.id values.
"""

import json
import logging
from datetime import datetime
from uuid import UUID

import psycopg2.errors

from clients.postgres_client import PostgresClient
from auth.exceptions import DuplicateAccountError
from auth.types import CredentialRecord, GuardianParticipant, TrustedDevice, TwoFactorChallenge

logger = logging.getLogger(__name__)

EMAIL_UNIQUE_CONSTRAINT = "users_email_key"

ADMIN_ROLE_NAMES = ("district", "unitadmin", "admin")


def _uuid(value) -> UUID:
    return UUID(value) if isinstance(value, str) else value


class AuthDatabase:
    """Database operations for authentication."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    # --- Credentials ---

    def find_credential(self, email: str, organization_id: int) -> CredentialRecord | None:
        """Find a user's credentials scoped to one organization."""
        row = self._db.execute_single(
            """SELECT u.id, uo.organization_id, u.email, u.password AS password_hash,
                      u.is_verified, u.full_name
               FROM users u
               JOIN user_organizations uo ON u.id = uo.user_id
               WHERE u.email = lower(%s) AND uo.organization_id = %s""",
            (email, organization_id),
        )
        if row is None:
            return None
        return CredentialRecord(
            id=_uuid(row["id"]),
            organization_id=row["organization_id"],
            email=row["email"],
            password_hash=row["password_hash"] or "",
            is_verified=bool(row["is_verified"]),
            full_name=row["full_name"] or "",
        )

    def find_user_by_email(self, email: str) -> UUID | None:
        """Find a user id by email across all organizations."""
        row = self._db.execute_single(
            "SELECT id FROM users WHERE email = lower(%s)",
            (email,),
        )
        if row is None:
            return None
        return _uuid(row["id"])

    def update_password(self, user_id: UUID, password_hash: str) -> bool:
        """Replace a user's password hash.

        Returns:
            True if the user was found and updated, False if not found.
        """
        rows = self._db.execute_returning(
            "UPDATE users SET password = %s WHERE id = %s RETURNING id",
            (password_hash, str(user_id)),
        )
        return len(rows) > 0

    def register_user(
        self,
        email: str,
        password_hash: str,
        full_name: str,
        is_verified: bool,
        organization_id: int,
        role_name: str,
    ) -> UUID:
        """Create a user and link it to an organization with one role.

        All three statements run in one transaction: a user is never left
        without an organization link.

        Raises:
            DuplicateAccountError: If the email is already registered.
            LookupError: If role_name does not exist in roles.
        """
        try:
            with self._db.transaction() as cur:
                cur.execute(
                    """INSERT INTO users (email, password, full_name, is_verified)
                       VALUES (lower(%s), %s, %s, %s)
                       RETURNING id""",
                    (email, password_hash, full_name, is_verified),
                )
                user_id = _uuid(cur.fetchone()["id"])

                cur.execute("SELECT id FROM roles WHERE role_name = %s", (role_name,))
                role = cur.fetchone()
                if role is None:
                    raise LookupError(f"Role '{role_name}' not found in roles table")

                cur.execute(
                    """INSERT INTO user_organizations (user_id, organization_id, role_ids)
                       VALUES (%s, %s, %s::jsonb)""",
                    (str(user_id), organization_id, json.dumps([role["id"]])),
                )
        except psycopg2.errors.UniqueViolation as e:
            if e.diag.constraint_name == EMAIL_UNIQUE_CONSTRAINT:
                raise DuplicateAccountError("account_already_exists") from e
            raise

        return user_id

    # --- Roles and organizations ---

    def find_roles_and_permissions(self, user_id: UUID, organization_id: int) -> tuple[list[str], list[str]]:
        """Distinct role names and permission keys reachable through role_ids.

        Returns:
            Tuple of (role_names, permission_keys), each sorted.
        """
        role_rows = self._db.execute(
            """SELECT DISTINCT r.role_name
               FROM user_organizations uo
               CROSS JOIN LATERAL jsonb_array_elements_text(uo.role_ids) AS role_id_text
               JOIN roles r ON r.id = role_id_text::integer
               WHERE uo.user_id = %s AND uo.organization_id = %s
               ORDER BY r.role_name""",
            (str(user_id), organization_id),
        )
        permission_rows = self._db.execute(
            """SELECT DISTINCT p.permission_key
               FROM user_organizations uo
               CROSS JOIN LATERAL jsonb_array_elements_text(uo.role_ids) AS role_id_text
               JOIN role_permissions rp ON rp.role_id = role_id_text::integer
               JOIN permissions p ON p.id = rp.permission_id
               WHERE uo.user_id = %s AND uo.organization_id = %s
               ORDER BY p.permission_key""",
            (str(user_id), organization_id),
        )
        return (
            [row["role_name"] for row in role_rows],
            [row["permission_key"] for row in permission_rows],
        )

    def is_member(self, user_id: UUID, organization_id: int) -> bool:
        """Check whether the user belongs to the organization."""
        row = self._db.execute_single(
            "SELECT 1 AS found FROM user_organizations WHERE user_id = %s AND organization_id = %s",
            (str(user_id), organization_id),
        )
        return row is not None

    def find_admin_emails(self, organization_id: int) -> list[str]:
        """Emails of the organization's administrators."""
        rows = self._db.execute(
            """SELECT DISTINCT u.email
               FROM users u
               JOIN user_organizations uo ON u.id = uo.user_id
               CROSS JOIN LATERAL jsonb_array_elements_text(uo.role_ids) AS role_id_text
               JOIN roles r ON r.id = role_id_text::integer
               WHERE uo.organization_id = %s AND r.role_name = ANY(%s)
               ORDER BY u.email""",
            (organization_id, list(ADMIN_ROLE_NAMES)),
        )
        return [row["email"] for row in rows]

    def find_organization_by_domain(self, domain: str) -> int | None:
        """Map a request hostname to an organization (supports '*' wildcards)."""
        row = self._db.execute_single(
            """SELECT organization_id
               FROM organization_domains
               WHERE domain = %s OR %s LIKE REPLACE(domain, '*', '%%')
               LIMIT 1""",
            (domain, domain),
        )
        if row is None:
            return None
        return row["organization_id"]

    def find_unclaimed_guardian_participants(self, user_id: UUID, email: str) -> list[GuardianParticipant]:
        """Participants whose guardian email matches but are not linked to this user yet."""
        rows = self._db.execute(
            """SELECT pg.id AS guardian_id, p.id AS participant_id, p.first_name, p.last_name
               FROM parents_guardians pg
               JOIN participant_guardians pgu ON pg.id = pgu.guardian_id
               JOIN participants p ON pgu.participant_id = p.id
               LEFT JOIN user_participants up ON up.participant_id = p.id AND up.user_id = %s
               WHERE pg.courriel = lower(%s) AND up.participant_id IS NULL""",
            (str(user_id), email),
        )
        return [GuardianParticipant.model_validate(row) for row in rows]

    # --- Two-factor challenges ---

    def store_challenge(self, challenge: TwoFactorChallenge) -> None:
        """Persist a new challenge (hash only)."""
        self._db.execute_returning(
            """INSERT INTO two_factor_codes
                   (id, user_id, organization_id, code_hash, created_at, expires_at,
                    attempts, verified, ip_address, user_agent)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                str(challenge.id),
                str(challenge.user_id),
                challenge.organization_id,
                challenge.code_hash,
                challenge.created_at,
                challenge.expires_at,
                challenge.attempts,
                challenge.verified,
                challenge.ip_address,
                challenge.user_agent,
            ),
        )

    def get_latest_challenge(self, user_id: UUID, organization_id: int, now: datetime) -> TwoFactorChallenge | None:
        """Most recently created unverified, unexpired challenge."""
        row = self._db.execute_single(
            """SELECT id, user_id, organization_id, code_hash, created_at, expires_at,
                      attempts, verified, ip_address, user_agent
               FROM two_factor_codes
               WHERE user_id = %s AND organization_id = %s
                 AND verified = false AND expires_at > %s
               ORDER BY created_at DESC
               LIMIT 1""",
            (str(user_id), organization_id, now),
        )
        if row is None:
            return None
        return TwoFactorChallenge.model_validate(row)

    def record_challenge_attempt(
        self,
        challenge_id: UUID,
        expected_attempts: int,
        max_attempts: int,
        verified: bool,
        now: datetime,
    ) -> bool:
        """Count one attempt and set the outcome, if nobody else got there first.

        Compare-and-set on the attempts value the caller read. The counter is
        capped at max_attempts.

        Returns:
            True if this write won, False if the row changed, expired or was verified.
        """
        rows = self._db.execute_returning(
            """UPDATE two_factor_codes
               SET attempts = LEAST(attempts + 1, %s), verified = %s
               WHERE id = %s AND attempts = %s AND verified = false AND expires_at > %s
               RETURNING id""",
            (max_attempts, verified, str(challenge_id), expected_attempts, now),
        )
        return len(rows) > 0

    def cleanup_expired_challenges(self, now: datetime) -> int:
        """Delete expired challenges. Returns count deleted."""
        rows = self._db.execute_returning(
            "DELETE FROM two_factor_codes WHERE expires_at < %s RETURNING id",
            (now,),
        )
        return len(rows)

    # --- Trusted devices ---

    def store_trusted_device(self, device: TrustedDevice) -> None:
        """Persist a trusted device."""
        self._db.execute_returning(
            """INSERT INTO trusted_devices
                   (user_id, organization_id, device_token, device_fingerprint, device_name,
                    created_at, last_used_at, expires_at, is_active)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING device_token""",
            (
                str(device.user_id),
                device.organization_id,
                device.device_token,
                device.device_fingerprint,
                device.device_name,
                device.created_at,
                device.last_used_at,
                device.expires_at,
                device.is_active,
            ),
        )

    def touch_trusted_device(self, user_id: UUID, organization_id: int, device_token: str, now: datetime) -> bool:
        """Mark an active, unexpired device as used now. Expiry is left unchanged.

        Returns:
            True if a matching device was found.
        """
        rows = self._db.execute_returning(
            """UPDATE trusted_devices
               SET last_used_at = %s
               WHERE user_id = %s AND organization_id = %s AND device_token = %s
                 AND is_active = true AND expires_at > %s
               RETURNING device_token""",
            (now, str(user_id), organization_id, device_token, now),
        )
        return len(rows) > 0

    def cleanup_expired_devices(self, now: datetime) -> int:
        """Delete expired trusted devices. Returns count deleted."""
        rows = self._db.execute_returning(
            "DELETE FROM trusted_devices WHERE expires_at < %s RETURNING device_token",
            (now,),
        )
        return len(rows)

    # --- Password reset ---

    def store_reset_token(self, user_id: UUID, token_hash: str, expires_at: datetime) -> bool:
        """Set the user's reset token, replacing any previous one.

        Returns:
            True if the user was found.
        """
        rows = self._db.execute_returning(
            """UPDATE users
               SET reset_token = %s, reset_token_expiry = %s
               WHERE id = %s
               RETURNING id""",
            (token_hash, expires_at, str(user_id)),
        )
        return len(rows) > 0

    def consume_reset_token(self, token_hash: str, password_hash: str, now: datetime) -> UUID | None:
        """Change the password and clear the token in one statement.

        Returns:
            The user id, or None if no unexpired token matched.
        """
        row = self._db.execute_returning(
            """UPDATE users
               SET password = %s, reset_token = NULL, reset_token_expiry = NULL
               WHERE reset_token = %s AND reset_token_expiry > %s
               RETURNING id""",
            (password_hash, token_hash, now),
        )
        if not row:
            return None
        return _uuid(row[0]["id"])
