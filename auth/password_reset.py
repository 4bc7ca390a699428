"""Single-use password reset tokens.

Only the SHA-256 of the token is stored, in users.reset_token. Consuming a
token changes the password and clears the token in the same UPDATE, so a
token can never be used twice.
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from urllib.parse import urlencode
from uuid import UUID

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import InvalidResetTokenError
from auth.passwords import PasswordHasher
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class PasswordResetManager:
    """Issue and redeem password reset tokens."""

    def __init__(self, auth_db: AuthDatabase, hasher: PasswordHasher, config: AuthConfig):
        self._db = auth_db
        self._hasher = hasher
        self._config = config

    def issue(self, user_id: UUID) -> str:
        """Create a reset token for the user, replacing any previous one.

        Returns:
            The raw token, to be sent in the reset link.

        Raises:
            LookupError: If the user no longer exists.
        """
        raw_token = secrets.token_hex(32)
        expires_at = now_utc() + timedelta(minutes=self._config.reset_token_expiry_minutes)

        if not self._db.store_reset_token(user_id, hash_reset_token(raw_token), expires_at):
            raise LookupError(f"Reset token not saved: user {user_id} not found")

        logger.info(f"Password reset token issued for user {user_id}")
        return raw_token

    def reset_password(self, raw_token: str, new_password: str) -> UUID:
        """Set a new password using a reset token.

        Returns:
            The id of the user whose password changed.

        Raises:
            InvalidResetTokenError: If the token is unknown, expired or already used.
        """
        password_hash = self._hasher.hash(new_password)
        user_id = self._db.consume_reset_token(hash_reset_token(raw_token), password_hash, now_utc())

        if user_id is None:
            raise InvalidResetTokenError("Invalid or expired reset token")

        logger.info(f"Password reset completed for user {user_id}")
        return user_id

    def build_reset_link(self, raw_token: str) -> str:
        base = self._config.app_base_url.rstrip("/")
        return f"{base}/reset-password?{urlencode({'token': raw_token})}"
