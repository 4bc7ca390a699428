"""Per-client rate limiting for login and password reset.

Fixed window counters in Valkey: the first attempt creates the key with the
window TTL, later attempts only increment it, and the counter disappears when
the window elapses. Login and reset use separate key prefixes.
"""

import logging

from clients.valkey_client import ValkeyClient
from auth.config import AuthConfig
from auth.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Attempt counter for one purpose (login or reset) keyed by client address.

    The address is the peer exactly as the server reports it, IP or not.
    Only a request with no peer at all counts against the shared "unknown" key.
    """

    KEY_PREFIX = "ratelimit:"

    def __init__(self, valkey: ValkeyClient, purpose: str, max_attempts: int, window_seconds: int):
        self._valkey = valkey
        self.purpose = purpose
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    @classmethod
    def for_login(cls, valkey: ValkeyClient, config: AuthConfig) -> "RateLimiter":
        """Limiter shared by login and 2FA verification."""
        return cls(
            valkey,
            purpose="login",
            max_attempts=config.login_rate_limit_attempts,
            window_seconds=config.login_rate_limit_window_minutes * 60,
        )

    @classmethod
    def for_password_reset(cls, valkey: ValkeyClient, config: AuthConfig) -> "RateLimiter":
        """Limiter for reset requests and reset submissions."""
        return cls(
            valkey,
            purpose="password_reset",
            max_attempts=config.effective_reset_rate_limit_attempts,
            window_seconds=config.reset_rate_limit_window_minutes * 60,
        )

    def _key(self, client_address: str) -> str:
        return f"{self.KEY_PREFIX}{self.purpose}:{client_address or 'unknown'}"

    def check_rate_limit(self, client_address: str) -> None:
        """Count an attempt and reject it if the window's allowance is spent.

        Raises:
            RateLimitedError: If this attempt exceeds the cap.
        """
        count, ttl = self._valkey.incr_in_window(self._key(client_address), self.window_seconds)

        if count > self.max_attempts:
            retry_after = max(ttl, 1)  # At least 1 second
            logger.warning(f"Rate limit exceeded for {self.purpose} from {client_address}")
            raise RateLimitedError(retry_after_seconds=retry_after)
