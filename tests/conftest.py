"""Shared test fixtures for the auth test suite.

Valkey is backed by fakeredis and the auth tables by an in-memory store with
the same interface as AuthDatabase, so the suite runs without live services.
SQL itself is covered in tests/auth/test_database.py against a mocked
PostgresClient.
"""

import itertools
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import Mock
from uuid import UUID, uuid4

import fakeredis
import pytest
import redis
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env")

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from auth.config import AuthConfig
from auth.exceptions import DuplicateAccountError
from auth.notifications import NotificationSender
from auth.password_reset import PasswordResetManager
from auth.passwords import PasswordHasher
from auth.rate_limiter import RateLimiter
from auth.roles import RoleResolver
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import SessionTokenIssuer
from auth.trusted_devices import TrustedDeviceManager
from auth.two_factor import TwoFactorManager
from auth.types import CredentialRecord, GuardianParticipant, TrustedDevice, TwoFactorChallenge
from clients.email_client import EmailGatewayClient
from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc
from utils.user_context import clear_request_context


# =============================================================================
# TEST CONSTANTS
# =============================================================================

TEST_ORG_ID = 1
OTHER_ORG_ID = 2
TEST_IP = "192.168.1.10"
TEST_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
TEST_JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"

# Role name -> permission keys
TEST_ROLES = {
    "district": ["org.manage", "users.manage", "finance.view"],
    "unitadmin": ["users.manage", "finance.view"],
    "leader": ["attendance.manage", "participants.view"],
    "parent": ["participants.view_own"],
    "animation": ["attendance.manage", "activities.view"],
    "admin": ["org.manage"],
}


# =============================================================================
# IN-MEMORY AUTH STORE
# =============================================================================


class InMemoryAuthDatabase:
    """Dictionary-backed store with the AuthDatabase interface.

    Mirrors the SQL semantics the services rely on: lowercase email lookup,
    compare-and-set challenge attempts, single-statement reset consumption
    and all-or-nothing registration.
    """

    def __init__(self, roles: dict[str, list[str]] | None = None):
        self._lock = threading.RLock()
        self._role_ids = itertools.count(1)
        self.roles: dict[str, int] = {}
        self.role_permissions: dict[int, list[str]] = {}
        self.users: dict[UUID, dict] = {}
        self.memberships: dict[tuple[UUID, int], list[int]] = {}
        self.challenges: dict[UUID, TwoFactorChallenge] = {}
        self.devices: dict[str, TrustedDevice] = {}
        self.organization_domains: dict[str, int] = {}
        self.guardian_links: list[dict] = []
        for name, permissions in (roles or TEST_ROLES).items():
            self.add_role(name, permissions)

    # --- Seeding helpers ---

    def add_role(self, name: str, permissions: list[str]) -> int:
        role_id = next(self._role_ids)
        self.roles[name] = role_id
        self.role_permissions[role_id] = list(permissions)
        return role_id

    def add_user(
        self,
        email: str,
        password_hash: str,
        organization_id: int = TEST_ORG_ID,
        roles: list[str] | None = None,
        is_verified: bool = True,
        full_name: str = "Test User",
    ) -> UUID:
        user_id = uuid4()
        self.users[user_id] = {
            "id": user_id,
            "email": email.strip().lower(),
            "password": password_hash,
            "full_name": full_name,
            "is_verified": is_verified,
            "reset_token": None,
            "reset_token_expiry": None,
        }
        self.add_membership(user_id, organization_id, roles if roles is not None else ["parent"])
        return user_id

    def add_membership(self, user_id: UUID, organization_id: int, roles: list[str]) -> None:
        self.memberships[(user_id, organization_id)] = [self.roles[name] for name in roles]

    def add_guardian_link(self, guardian_email: str, participant_id: int, first_name: str, last_name: str,
                          claimed_by: UUID | None = None) -> None:
        self.guardian_links.append({
            "guardian_id": 100 + len(self.guardian_links),
            "email": guardian_email.lower(),
            "participant_id": participant_id,
            "first_name": first_name,
            "last_name": last_name,
            "claimed_by": claimed_by,
        })

    def _user_by_email(self, email: str) -> dict | None:
        email = email.lower()
        return next((u for u in self.users.values() if u["email"] == email), None)

    # --- AuthDatabase interface ---

    def find_credential(self, email: str, organization_id: int) -> CredentialRecord | None:
        user = self._user_by_email(email)
        if user is None or (user["id"], organization_id) not in self.memberships:
            return None
        return CredentialRecord(
            id=user["id"],
            organization_id=organization_id,
            email=user["email"],
            password_hash=user["password"],
            is_verified=user["is_verified"],
            full_name=user["full_name"],
        )

    def find_user_by_email(self, email: str) -> UUID | None:
        user = self._user_by_email(email)
        return user["id"] if user else None

    def update_password(self, user_id: UUID, password_hash: str) -> bool:
        if user_id not in self.users:
            return False
        self.users[user_id]["password"] = password_hash
        return True

    def register_user(self, email, password_hash, full_name, is_verified, organization_id, role_name) -> UUID:
        with self._lock:
            if self._user_by_email(email) is not None:
                raise DuplicateAccountError("account_already_exists")
            if role_name not in self.roles:
                # Nothing was written: the transaction would have rolled back
                raise LookupError(f"Role '{role_name}' not found in roles table")
            return self.add_user(email, password_hash, organization_id, [role_name], is_verified, full_name)

    def find_roles_and_permissions(self, user_id: UUID, organization_id: int) -> tuple[list[str], list[str]]:
        role_ids = self.memberships.get((user_id, organization_id), [])
        names = sorted({name for name, rid in self.roles.items() if rid in role_ids})
        permissions = sorted({p for rid in role_ids for p in self.role_permissions.get(rid, [])})
        return names, permissions

    def is_member(self, user_id: UUID, organization_id: int) -> bool:
        return (user_id, organization_id) in self.memberships

    def find_admin_emails(self, organization_id: int) -> list[str]:
        admin_ids = {self.roles[name] for name in ("district", "unitadmin", "admin") if name in self.roles}
        return sorted(
            self.users[user_id]["email"]
            for (user_id, org_id), role_ids in self.memberships.items()
            if org_id == organization_id and admin_ids.intersection(role_ids)
        )

    def find_organization_by_domain(self, domain: str) -> int | None:
        return self.organization_domains.get(domain)

    def find_unclaimed_guardian_participants(self, user_id: UUID, email: str) -> list[GuardianParticipant]:
        return [
            GuardianParticipant(
                guardian_id=link["guardian_id"],
                participant_id=link["participant_id"],
                first_name=link["first_name"],
                last_name=link["last_name"],
            )
            for link in self.guardian_links
            if link["email"] == email.lower() and link["claimed_by"] != user_id
        ]

    def store_challenge(self, challenge: TwoFactorChallenge) -> None:
        with self._lock:
            self.challenges[challenge.id] = challenge.model_copy()

    def get_latest_challenge(self, user_id, organization_id, now) -> TwoFactorChallenge | None:
        with self._lock:
            candidates = [
                c for c in self.challenges.values()
                if c.user_id == user_id and c.organization_id == organization_id
                and not c.verified and c.expires_at > now
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda c: c.created_at).model_copy()

    def record_challenge_attempt(self, challenge_id, expected_attempts, max_attempts, verified, now) -> bool:
        with self._lock:
            current = self.challenges.get(challenge_id)
            if (
                current is None
                or current.attempts != expected_attempts
                or current.verified
                or current.expires_at <= now
            ):
                return False
            self.challenges[challenge_id] = current.model_copy(
                update={"attempts": min(current.attempts + 1, max_attempts), "verified": verified}
            )
            return True

    def cleanup_expired_challenges(self, now) -> int:
        with self._lock:
            expired = [cid for cid, c in self.challenges.items() if c.expires_at < now]
            for cid in expired:
                del self.challenges[cid]
            return len(expired)

    def store_trusted_device(self, device: TrustedDevice) -> None:
        with self._lock:
            self.devices[device.device_token] = device.model_copy()

    def touch_trusted_device(self, user_id, organization_id, device_token, now) -> bool:
        with self._lock:
            device = self.devices.get(device_token)
            if (
                device is None
                or device.user_id != user_id
                or device.organization_id != organization_id
                or not device.is_active
                or device.expires_at <= now
            ):
                return False
            self.devices[device_token] = device.model_copy(update={"last_used_at": now})
            return True

    def cleanup_expired_devices(self, now) -> int:
        with self._lock:
            expired = [token for token, d in self.devices.items() if d.expires_at < now]
            for token in expired:
                del self.devices[token]
            return len(expired)

    def store_reset_token(self, user_id, token_hash, expires_at) -> bool:
        with self._lock:
            if user_id not in self.users:
                return False
            self.users[user_id]["reset_token"] = token_hash
            self.users[user_id]["reset_token_expiry"] = expires_at
            return True

    def consume_reset_token(self, token_hash, password_hash, now) -> UUID | None:
        with self._lock:
            for user in self.users.values():
                if (
                    user["reset_token"] == token_hash
                    and user["reset_token_expiry"] is not None
                    and user["reset_token_expiry"] > now
                ):
                    user["password"] = password_hash
                    user["reset_token"] = None
                    user["reset_token_expiry"] = None
                    return user["id"]
            return None


# =============================================================================
# CLOCK
# =============================================================================


class Clock:
    """Controllable replacement for utils.timezone.now_utc."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock(monkeypatch):
    """Freeze time for challenge, device and reset-token expiry."""
    c = Clock(now_utc())
    for module in ("auth.two_factor", "auth.trusted_devices", "auth.password_reset"):
        monkeypatch.setattr(f"{module}.now_utc", c)
    return c


# =============================================================================
# CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_request_context():
    """Ensure clean request context before and after each test."""
    clear_request_context()
    yield
    clear_request_context()


# =============================================================================
# INFRASTRUCTURE FIXTURES
# =============================================================================


@pytest.fixture
def fake_redis_server():
    """Isolated fakeredis server per test."""
    return fakeredis.FakeServer()


@pytest.fixture
def valkey(monkeypatch, fake_redis_server):
    """ValkeyClient talking to fakeredis."""
    def fake_from_url(url, **kwargs):
        return fakeredis.FakeRedis(
            server=fake_redis_server,
            decode_responses=kwargs.get("decode_responses", False),
        )

    monkeypatch.setattr(redis, "from_url", fake_from_url)
    client = ValkeyClient("redis://localhost:6379/0")
    yield client
    client.close()


@pytest.fixture
def auth_db():
    """In-memory auth store seeded with TEST_ROLES."""
    return InMemoryAuthDatabase()


@pytest.fixture
def config():
    """Test config: cheap bcrypt, production limits."""
    return AuthConfig(
        bcrypt_rounds=4,
        app_base_url="https://test.example.com",
        app_name="Test Org",
    )


@pytest.fixture
def hasher(config):
    return PasswordHasher(rounds=config.bcrypt_rounds)


@pytest.fixture
def mock_email_client():
    """Mock email client - no actual emails sent in tests."""
    mock = Mock(spec=EmailGatewayClient)
    mock.send_email.return_value = None
    return mock


@pytest.fixture
def mock_security_logger():
    """Mock security logger - audit rows are not needed for flow tests."""
    return Mock(spec=SecurityLogger)


@pytest.fixture
def token_issuer(config):
    return SessionTokenIssuer(TEST_JWT_SECRET, config)


@pytest.fixture
def auth_service(config, auth_db, hasher, valkey, token_issuer, mock_email_client, mock_security_logger):
    """Real AuthService over fakeredis and the in-memory store, mocked email."""
    return AuthService(
        config=config,
        auth_db=auth_db,
        hasher=hasher,
        login_limiter=RateLimiter.for_login(valkey, config),
        reset_limiter=RateLimiter.for_password_reset(valkey, config),
        two_factor=TwoFactorManager(auth_db, config),
        trusted_devices=TrustedDeviceManager(auth_db, config),
        role_resolver=RoleResolver(auth_db),
        token_issuer=token_issuer,
        password_reset=PasswordResetManager(auth_db, hasher, config),
        notifications=NotificationSender(mock_email_client, config),
        security_logger=mock_security_logger,
    )


@pytest.fixture
def sent_code(mock_email_client):
    """Reads the 6-digit code from the last email sent."""
    def _read() -> str:
        body = mock_email_client.send_email.call_args.kwargs["body"]
        marker = "Your verification code is: "
        start = body.index(marker) + len(marker)
        return body[start:start + 6]
    return _read


@pytest.fixture
def sent_reset_token(mock_email_client):
    """Reads the raw reset token from the last email sent."""
    def _read() -> str:
        body = mock_email_client.send_email.call_args.kwargs["body"]
        marker = "token="
        start = body.index(marker) + len(marker)
        return body[start:start + 64]
    return _read
