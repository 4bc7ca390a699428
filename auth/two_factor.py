"""Email two-factor codes.

A challenge is a 6-digit code stored only as its SHA-256 hash. Verification
always targets the newest unverified, unexpired challenge for the
(user, organization) pair and records the attempt and the outcome in one
compare-and-set write.
"""

import hashlib
import logging
import secrets
import uuid
from datetime import timedelta
from uuid import UUID

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.types import TwoFactorChallenge, ip_or_none
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


def hash_code(code: str) -> str:
    """SHA-256 hex digest of a verification code."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def generate_code() -> str:
    """Uniform random 6-digit code, zero padded."""
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


class TwoFactorManager:
    """Issue and verify two-factor challenges."""

    def __init__(self, auth_db: AuthDatabase, config: AuthConfig):
        self._db = auth_db
        self._config = config

    def issue(self, user_id: UUID, organization_id: int, ip_address: str | None, user_agent: str | None) -> str:
        """Create a challenge and return its plaintext code.

        The plaintext is returned once for delivery and never stored.
        """
        code = generate_code()
        now = now_utc()

        challenge = TwoFactorChallenge(
            id=uuid.uuid4(),
            user_id=user_id,
            organization_id=organization_id,
            code_hash=hash_code(code),
            created_at=now,
            expires_at=now + timedelta(minutes=self._config.two_factor_code_expiry_minutes),
            attempts=0,
            verified=False,
            ip_address=ip_or_none(ip_address),
            user_agent=user_agent,
        )
        self._db.store_challenge(challenge)

        logger.info(f"2FA challenge issued for user {user_id} in organization {organization_id}")
        return code

    def verify(self, user_id: UUID, organization_id: int, submitted_code: str) -> bool:
        """Check a submitted code against the newest open challenge.

        Every lookup that finds a challenge counts as an attempt. Returns
        False when there is no open challenge, the attempts are used up, the
        code is wrong, or a concurrent attempt changed the row first.
        """
        now = now_utc()
        challenge = self._db.get_latest_challenge(user_id, organization_id, now)
        if challenge is None:
            logger.info(f"No open 2FA challenge for user {user_id}")
            return False

        max_attempts = self._config.two_factor_max_attempts
        exhausted = challenge.attempts >= max_attempts
        matched = not exhausted and secrets.compare_digest(challenge.code_hash, hash_code(submitted_code))

        won = self._db.record_challenge_attempt(
            challenge.id,
            expected_attempts=challenge.attempts,
            max_attempts=max_attempts,
            verified=matched,
            now=now,
        )
        if not won:
            logger.warning(f"Concurrent 2FA attempt lost for challenge {challenge.id}")
            return False

        if exhausted:
            logger.warning(f"2FA challenge {challenge.id} has no attempts left")
            return False

        if not matched:
            logger.info(f"2FA code mismatch for user {user_id} (attempt {challenge.attempts + 1})")
        return matched

    def cleanup_expired(self) -> int:
        """Delete expired challenges. Returns count deleted."""
        deleted = self._db.cleanup_expired_challenges(now_utc())
        if deleted:
            logger.info(f"Deleted {deleted} expired 2FA challenges")
        return deleted
