"""Trusted devices: long-lived tokens that skip the 2FA challenge.

Lookup is by exact token only. The fingerprint and label are derived from
the user agent for display and audit.
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from uuid import UUID

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.types import TrustedDevice
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE = "Unknown Device"


def _detect_browser(user_agent: str) -> str:
    # Order matters: Edge and Opera also claim Chrome, Chrome also claims Safari
    if "Edg" in user_agent:
        return "Edge"
    if "OPR" in user_agent or "Opera" in user_agent:
        return "Opera"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Safari" in user_agent:
        return "Safari"
    return "Unknown Browser"


def _detect_os(user_agent: str) -> str:
    # Mobile first: Android UAs contain "Linux", iOS UAs contain "Mac OS X"
    if "Android" in user_agent:
        return "Android"
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    if "Windows" in user_agent:
        return "Windows"
    if "Mac OS X" in user_agent or "Macintosh" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    return "Unknown OS"


def parse_device_name(user_agent: str | None) -> str:
    """Coarse "{browser} on {os}" label from a user agent string."""
    if not user_agent:
        return UNKNOWN_DEVICE
    return f"{_detect_browser(user_agent)} on {_detect_os(user_agent)}"


def create_device_fingerprint(user_agent: str | None, user_id: UUID) -> str:
    """SHA-256 of "{user_agent}:{user_id}"."""
    return hashlib.sha256(f"{user_agent or ''}:{user_id}".encode("utf-8")).hexdigest()


class TrustedDeviceManager:
    """Create and check trusted device tokens."""

    def __init__(self, auth_db: AuthDatabase, config: AuthConfig):
        self._db = auth_db
        self._config = config

    def create(self, user_id: UUID, organization_id: int, user_agent: str | None) -> str:
        """Trust the current device and return its token."""
        now = now_utc()
        device = TrustedDevice(
            user_id=user_id,
            organization_id=organization_id,
            device_token=secrets.token_hex(32),
            device_fingerprint=create_device_fingerprint(user_agent, user_id),
            device_name=parse_device_name(user_agent),
            created_at=now,
            last_used_at=now,
            expires_at=now + timedelta(days=self._config.trusted_device_expiry_days),
            is_active=True,
        )
        self._db.store_trusted_device(device)

        logger.info(f"Trusted device '{device.device_name}' created for user {user_id}")
        return device.device_token

    def is_trusted(self, user_id: UUID, organization_id: int, device_token: str | None) -> bool:
        """Check a device token and record its use. Never extends expiry."""
        if not device_token:
            return False
        return self._db.touch_trusted_device(user_id, organization_id, device_token, now_utc())

    def cleanup_expired(self) -> int:
        """Delete expired devices. Returns count deleted."""
        deleted = self._db.cleanup_expired_devices(now_utc())
        if deleted:
            logger.info(f"Deleted {deleted} expired trusted devices")
        return deleted
