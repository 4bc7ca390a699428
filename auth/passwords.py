"""Password hashing and verification.

bcrypt via the `bcrypt` package. Hashes written by the legacy PHP stack carry
the `$2y$` marker, which is the same algorithm under a different version tag;
it is rewritten to `$2b$` before comparison so both formats verify.
"""

import logging

import bcrypt

logger = logging.getLogger(__name__)

LEGACY_PREFIX = "$2y$"
MODERN_PREFIX = "$2b$"

# bcrypt only looks at the first 72 bytes; newer releases raise instead of truncating
BCRYPT_MAX_BYTES = 72


def normalize_legacy_hash(stored_hash: str) -> str:
    """Rewrite a `$2y$` bcrypt hash to the equivalent `$2b$` form."""
    if stored_hash.startswith(LEGACY_PREFIX):
        return MODERN_PREFIX + stored_hash[len(LEGACY_PREFIX):]
    return stored_hash


def _password_bytes(password: str) -> bytes:
    return password.strip().encode("utf-8")[:BCRYPT_MAX_BYTES]


class PasswordHasher:
    """Hash new passwords and verify submitted ones."""

    def __init__(self, rounds: int = 10):
        self._rounds = rounds

    def hash(self, password: str) -> str:
        """Hash a password in modern `$2b$` format."""
        hashed = bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=self._rounds))
        return hashed.decode("utf-8")

    def verify(self, submitted: str, stored_hash: str) -> bool:
        """
        Check a submitted password against a stored hash.

        Returns False for an empty or malformed stored hash instead of raising.
        """
        if not submitted or not stored_hash:
            return False

        candidate = normalize_legacy_hash(stored_hash).encode("utf-8")
        try:
            return bcrypt.checkpw(_password_bytes(submitted), candidate)
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False
