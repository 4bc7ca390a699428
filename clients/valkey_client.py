"""
Valkey (Redis-compatible) client for rate-limit counters.

Simple wrapper around redis-py. Connection URL from Vault.
Fail-fast: raises on connection failure, never returns fallback values.
"""

import logging

import redis

logger = logging.getLogger(__name__)


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        client = ValkeyClient("redis://localhost:6379/0")
        count, ttl = client.incr_in_window("ratelimit:login:10.0.0.1", 900)
    """

    def __init__(self, url: str, socket_timeout: float = 2.0):
        """
        Initialize Valkey connection.

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)
            socket_timeout: Seconds before a single command gives up

        Raises:
            redis.ConnectionError: If connection fails
        """
        self._client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """
        Health check.

        Returns True if Valkey responds.
        Raises redis.ConnectionError if unreachable.
        """
        self._client.ping()
        return True

    def incr_in_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        """
        Increment a fixed-window counter.

        The key is created with its TTL before the increment, in one
        MULTI/EXEC block, so a counter can never exist without an expiry
        and parallel callers never lose an increment.

        Returns:
            (count after increment, remaining TTL in seconds)
        """
        pipe = self._client.pipeline(transaction=True)
        pipe.set(key, 0, ex=window_seconds, nx=True)
        pipe.incr(key)
        pipe.ttl(key)
        _, count, ttl = pipe.execute()
        return int(count), int(ttl)

    def close(self) -> None:
        """Close the connection."""
        self._client.close()
        logger.info("ValkeyClient closed")
