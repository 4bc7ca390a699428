"""Authentication service - orchestrates login, 2FA, registration and reset.

Login runs as an explicit state machine:

    CREDENTIAL_CHECK -> PASSWORD_CHECK -> VERIFICATION_GATE -> DEVICE_TRUST_CHECK
        -> CHALLENGE_ISSUED      (untrusted device: code emailed, no token)
        -> TOKEN_ISSUED          (trusted device)

    TWO_FACTOR_CREDENTIAL_CHECK -> VERIFICATION_GATE -> TWO_FACTOR_VERIFY -> TOKEN_ISSUED

Every step goes through LOGIN_TRANSITIONS, and TOKEN_ISSUED refuses to run
unless the verification gate and a second factor (trusted device or 2FA code)
were both passed.
"""

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from uuid import UUID

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import (
    AccountNotVerifiedError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    NotOrganizationMemberError,
    OrganizationNotFoundError,
    RateLimitedError,
)
from auth.notifications import NotificationSender
from auth.password_reset import PasswordResetManager
from auth.passwords import PasswordHasher
from auth.rate_limiter import RateLimiter
from auth.roles import RoleResolver, normalize_requested_role
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.session import SessionTokenIssuer
from auth.trusted_devices import TrustedDeviceManager
from auth.two_factor import TwoFactorManager
from auth.types import CredentialRecord, GuardianParticipant, ResolvedRoles, SessionClaims, normalize_email

logger = logging.getLogger(__name__)


class LoginState(Enum):
    """Steps of the login and 2FA flows."""

    CREDENTIAL_CHECK = "credential_check"
    PASSWORD_CHECK = "password_check"
    VERIFICATION_GATE = "verification_gate"
    DEVICE_TRUST_CHECK = "device_trust_check"
    CHALLENGE_ISSUED = "challenge_issued"
    TOKEN_ISSUED = "token_issued"
    TWO_FACTOR_CREDENTIAL_CHECK = "two_factor_credential_check"
    TWO_FACTOR_VERIFY = "two_factor_verify"


LOGIN_TRANSITIONS: dict[LoginState, frozenset[LoginState]] = {
    LoginState.CREDENTIAL_CHECK: frozenset({LoginState.PASSWORD_CHECK}),
    LoginState.PASSWORD_CHECK: frozenset({LoginState.VERIFICATION_GATE}),
    LoginState.VERIFICATION_GATE: frozenset({LoginState.DEVICE_TRUST_CHECK, LoginState.TWO_FACTOR_VERIFY}),
    LoginState.DEVICE_TRUST_CHECK: frozenset({LoginState.CHALLENGE_ISSUED, LoginState.TOKEN_ISSUED}),
    LoginState.TWO_FACTOR_CREDENTIAL_CHECK: frozenset({LoginState.VERIFICATION_GATE}),
    LoginState.TWO_FACTOR_VERIFY: frozenset({LoginState.TOKEN_ISSUED}),
    LoginState.CHALLENGE_ISSUED: frozenset(),
    LoginState.TOKEN_ISSUED: frozenset(),
}

ENTRY_STATES = frozenset({LoginState.CREDENTIAL_CHECK, LoginState.TWO_FACTOR_CREDENTIAL_CHECK})


class LoginStateError(RuntimeError):
    """The login flow attempted a step it is not allowed to take."""


def check_transition(current: LoginState, next_state: LoginState) -> None:
    """Raise LoginStateError unless current -> next_state is in LOGIN_TRANSITIONS."""
    if next_state not in LOGIN_TRANSITIONS[current]:
        raise LoginStateError(f"Illegal login transition {current.name} -> {next_state.name}")


class SecondFactor(Enum):
    TRUSTED_DEVICE = "trusted_device"
    TWO_FACTOR_CODE = "two_factor_code"


@dataclass
class LoginResult:
    """Outcome of login or 2FA verification.

    requires_2fa=True carries no token: the client must submit the emailed
    code through verify_two_factor.
    """

    requires_2fa: bool
    user_id: UUID | None = None
    email: str | None = None
    full_name: str | None = None
    organization_id: int | None = None
    token: str | None = None
    device_token: str | None = None
    roles: ResolvedRoles | None = None
    guardian_participants: list[GuardianParticipant] = field(default_factory=list)


@dataclass
class RegistrationResult:
    """Result of account registration."""

    user_id: UUID
    is_verified: bool
    role: str


@dataclass
class _LoginFlow:
    """Mutable context threaded through the login states."""

    email: str
    organization_id: int
    ip_address: str | None
    user_agent: str | None
    password: str | None = None
    code: str | None = None
    device_token: str | None = None
    credential: CredentialRecord | None = None
    gate_passed: bool = False
    second_factor: SecondFactor | None = None
    new_device_token: str | None = None
    result: LoginResult | None = None
    path: list[LoginState] = field(default_factory=list)


class AuthService:
    """Orchestrates password login with adaptive email 2FA.

    Handles:
    - Login (with trusted-device exemption from 2FA)
    - 2FA verification and device trust
    - Registration
    - Password reset (with enumeration protection)
    - Session verification and organization switching
    """

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase,
        hasher: PasswordHasher,
        login_limiter: RateLimiter,
        reset_limiter: RateLimiter,
        two_factor: TwoFactorManager,
        trusted_devices: TrustedDeviceManager,
        role_resolver: RoleResolver,
        token_issuer: SessionTokenIssuer,
        password_reset: PasswordResetManager,
        notifications: NotificationSender,
        security_logger: SecurityLogger,
    ):
        self._config = config
        self._auth_db = auth_db
        self._hasher = hasher
        self._login_limiter = login_limiter
        self._reset_limiter = reset_limiter
        self._two_factor = two_factor
        self._trusted_devices = trusted_devices
        self._role_resolver = role_resolver
        self._token_issuer = token_issuer
        self._password_reset = password_reset
        self._notifications = notifications
        self._security_logger = security_logger

        # Compared against when the email is unknown so both failures cost a bcrypt check
        self._dummy_hash = hasher.hash(secrets.token_hex(16))

        self._handlers: dict[LoginState, Callable[[_LoginFlow], LoginState | None]] = {
            LoginState.CREDENTIAL_CHECK: self._check_credential,
            LoginState.PASSWORD_CHECK: self._check_password,
            LoginState.VERIFICATION_GATE: self._check_verified,
            LoginState.DEVICE_TRUST_CHECK: self._check_device_trust,
            LoginState.CHALLENGE_ISSUED: self._issue_challenge,
            LoginState.TOKEN_ISSUED: self._issue_token,
            LoginState.TWO_FACTOR_CREDENTIAL_CHECK: self._check_two_factor_credential,
            LoginState.TWO_FACTOR_VERIFY: self._verify_two_factor_code,
        }

    # --- State machine ---

    def _run(self, flow: _LoginFlow, start: LoginState) -> LoginResult:
        """Drive the flow from an entry state until a handler returns no next state."""
        if start not in ENTRY_STATES:
            raise LoginStateError(f"{start.name} is not an entry state")

        state = start
        while True:
            flow.path.append(state)
            next_state = self._handlers[state](flow)
            if next_state is None:
                break
            check_transition(state, next_state)
            state = next_state

        if flow.result is None:
            raise LoginStateError(f"Login flow ended in {state.name} without a result")
        return flow.result

    def _check_credential(self, flow: _LoginFlow) -> LoginState:
        flow.credential = self._auth_db.find_credential(flow.email, flow.organization_id)
        return LoginState.PASSWORD_CHECK

    def _check_password(self, flow: _LoginFlow) -> LoginState:
        if flow.credential is None:
            self._hasher.verify(flow.password or "", self._dummy_hash)
            self._log_login_failure(flow, "user_not_found")
            raise InvalidCredentialsError()

        if not self._hasher.verify(flow.password or "", flow.credential.password_hash):
            self._log_login_failure(flow, "invalid_password")
            raise InvalidCredentialsError()

        return LoginState.VERIFICATION_GATE

    def _check_verified(self, flow: _LoginFlow) -> LoginState:
        credential = flow.credential
        if flow.code is not None and not credential.is_verified:
            # Unverified accounts never receive a challenge; report them as a bad code
            self._log_two_factor_failure(flow, "not_verified")
            raise InvalidTwoFactorCodeError("Invalid or expired verification code")

        if credential is None or not credential.is_verified:
            self._security_logger.log(
                SecurityEvent.LOGIN_UNVERIFIED,
                email=flow.email,
                user_id=credential.id if credential else None,
                organization_id=flow.organization_id,
                ip_address=flow.ip_address,
                user_agent=flow.user_agent,
            )
            raise AccountNotVerifiedError("Account is awaiting administrator approval")

        flow.gate_passed = True
        if flow.code is not None:
            return LoginState.TWO_FACTOR_VERIFY
        return LoginState.DEVICE_TRUST_CHECK

    def _check_device_trust(self, flow: _LoginFlow) -> LoginState:
        if self._trusted_devices.is_trusted(flow.credential.id, flow.organization_id, flow.device_token):
            flow.second_factor = SecondFactor.TRUSTED_DEVICE
            self._security_logger.log(
                SecurityEvent.TRUSTED_DEVICE_USED,
                email=flow.email,
                user_id=flow.credential.id,
                organization_id=flow.organization_id,
                ip_address=flow.ip_address,
                user_agent=flow.user_agent,
            )
            return LoginState.TOKEN_ISSUED
        return LoginState.CHALLENGE_ISSUED

    def _issue_challenge(self, flow: _LoginFlow) -> None:
        credential = flow.credential
        code = self._two_factor.issue(credential.id, flow.organization_id, flow.ip_address, flow.user_agent)
        delivered = self._notifications.send_two_factor_code(credential.email, credential.full_name, code)

        self._security_logger.log(
            SecurityEvent.TWO_FACTOR_ISSUED,
            email=credential.email,
            user_id=credential.id,
            organization_id=flow.organization_id,
            ip_address=flow.ip_address,
            user_agent=flow.user_agent,
            details={"email_delivered": delivered},
        )

        flow.result = LoginResult(
            requires_2fa=True,
            user_id=credential.id,
            email=credential.email,
            organization_id=flow.organization_id,
        )
        return None

    def _check_two_factor_credential(self, flow: _LoginFlow) -> LoginState:
        flow.credential = self._auth_db.find_credential(flow.email, flow.organization_id)
        if flow.credential is None:
            self._log_two_factor_failure(flow, "user_not_found")
            raise InvalidTwoFactorCodeError("Invalid or expired verification code")
        return LoginState.VERIFICATION_GATE

    def _verify_two_factor_code(self, flow: _LoginFlow) -> LoginState:
        credential = flow.credential
        if not self._two_factor.verify(credential.id, flow.organization_id, flow.code or ""):
            self._log_two_factor_failure(flow, "invalid_code")
            raise InvalidTwoFactorCodeError("Invalid or expired verification code")

        flow.second_factor = SecondFactor.TWO_FACTOR_CODE
        self._security_logger.log(
            SecurityEvent.TWO_FACTOR_VERIFIED,
            email=credential.email,
            user_id=credential.id,
            organization_id=flow.organization_id,
            ip_address=flow.ip_address,
            user_agent=flow.user_agent,
        )

        flow.new_device_token = self._trusted_devices.create(credential.id, flow.organization_id, flow.user_agent)
        self._security_logger.log(
            SecurityEvent.TRUSTED_DEVICE_CREATED,
            email=credential.email,
            user_id=credential.id,
            organization_id=flow.organization_id,
            ip_address=flow.ip_address,
            user_agent=flow.user_agent,
        )
        return LoginState.TOKEN_ISSUED

    def _issue_token(self, flow: _LoginFlow) -> None:
        if not flow.gate_passed or flow.second_factor is None:
            raise LoginStateError("Refusing to issue a token before verification and a second factor")

        credential = flow.credential
        roles = self._role_resolver.resolve(credential.id, flow.organization_id)
        token = self._token_issuer.issue_login_token(credential.id, flow.organization_id, roles)
        guardians = self._auth_db.find_unclaimed_guardian_participants(credential.id, credential.email)

        self._security_logger.log(
            SecurityEvent.LOGIN_SUCCEEDED,
            email=credential.email,
            user_id=credential.id,
            organization_id=flow.organization_id,
            ip_address=flow.ip_address,
            user_agent=flow.user_agent,
            details={"second_factor": flow.second_factor.value},
        )

        flow.result = LoginResult(
            requires_2fa=False,
            user_id=credential.id,
            email=credential.email,
            full_name=credential.full_name,
            organization_id=flow.organization_id,
            token=token,
            device_token=flow.new_device_token,
            roles=roles,
            guardian_participants=guardians,
        )
        return None

    def _log_login_failure(self, flow: _LoginFlow, reason: str) -> None:
        self._security_logger.log(
            SecurityEvent.LOGIN_FAILED,
            email=flow.email,
            organization_id=flow.organization_id,
            ip_address=flow.ip_address,
            user_agent=flow.user_agent,
            details={"reason": reason},
        )

    def _log_two_factor_failure(self, flow: _LoginFlow, reason: str) -> None:
        self._security_logger.log(
            SecurityEvent.TWO_FACTOR_FAILED,
            email=flow.email,
            user_id=flow.credential.id if flow.credential else None,
            organization_id=flow.organization_id,
            ip_address=flow.ip_address,
            user_agent=flow.user_agent,
            details={"reason": reason},
        )

    def _check_rate_limit(self, limiter: RateLimiter, ip_address: str | None, email: str | None = None) -> None:
        try:
            limiter.check_rate_limit(ip_address or "")
        except RateLimitedError as e:
            self._security_logger.log(
                SecurityEvent.RATE_LIMITED,
                email=email,
                ip_address=ip_address,
                details={"purpose": limiter.purpose, "retry_after": e.retry_after_seconds},
            )
            raise

    # --- Public operations ---

    def login(
        self,
        email: str,
        password: str,
        organization_id: str | int | None,
        ip_address: str | None,
        user_agent: str | None,
        device_token: str | None = None,
        hostname: str | None = None,
    ) -> LoginResult:
        """Check a password and either issue a token or an emailed 2FA challenge.

        The organization is resolved from organization_id, then hostname, only
        once the attempt has passed the rate limit.

        Raises:
            RateLimitedError: If this client has used up its login attempts.
            OrganizationNotFoundError: If no organization matches the request.
            InvalidCredentialsError: If the email or password is wrong (indistinguishable).
            AccountNotVerifiedError: If the account awaits approval.
        """
        email = normalize_email(email)
        self._check_rate_limit(self._login_limiter, ip_address, email)

        flow = _LoginFlow(
            email=email,
            organization_id=self.resolve_organization_id(organization_id, hostname),
            ip_address=ip_address,
            user_agent=user_agent,
            password=password,
            device_token=device_token,
        )
        return self._run(flow, LoginState.CREDENTIAL_CHECK)

    def verify_two_factor(
        self,
        email: str,
        code: str,
        organization_id: str | int | None,
        ip_address: str | None,
        user_agent: str | None,
        hostname: str | None = None,
    ) -> LoginResult:
        """Check an emailed code, trust this device and issue a token.

        An unknown email and an account awaiting approval fail exactly like a
        wrong code.

        Raises:
            RateLimitedError: If this client has used up its login attempts.
            OrganizationNotFoundError: If no organization matches the request.
            InvalidTwoFactorCodeError: If the code is wrong, expired or used up.
        """
        email = normalize_email(email)
        self._check_rate_limit(self._login_limiter, ip_address, email)

        flow = _LoginFlow(
            email=email,
            organization_id=self.resolve_organization_id(organization_id, hostname),
            ip_address=ip_address,
            user_agent=user_agent,
            code=code,
        )
        return self._run(flow, LoginState.TWO_FACTOR_CREDENTIAL_CHECK)

    def register(
        self,
        email: str,
        password: str,
        full_name: str,
        requested_type: str | None,
        organization_id: int,
        ip_address: str | None = None,
    ) -> RegistrationResult:
        """Create an account in the organization.

        Parents are verified immediately. Staff (animation) accounts wait for
        an administrator, who is notified by email.

        Raises:
            DuplicateAccountError: If the email is already registered.
        """
        email = normalize_email(email)
        role = normalize_requested_role(requested_type)
        is_verified = role == "parent"

        user_id = self._auth_db.register_user(
            email=email,
            password_hash=self._hasher.hash(password),
            full_name=full_name.strip(),
            is_verified=is_verified,
            organization_id=organization_id,
            role_name=role,
        )

        self._security_logger.log(
            SecurityEvent.USER_REGISTERED,
            email=email,
            user_id=user_id,
            organization_id=organization_id,
            ip_address=ip_address,
            details={"role": role, "is_verified": is_verified},
        )
        logger.info(f"Registered user {user_id} as {role} in organization {organization_id}")

        if role == "animation":
            admin_emails = self._auth_db.find_admin_emails(organization_id)
            self._notifications.send_admin_verification(admin_emails, full_name.strip(), email)

        return RegistrationResult(user_id=user_id, is_verified=is_verified, role=role)

    def request_password_reset(
        self,
        email: str,
        organization_id: str | int | None,
        ip_address: str | None,
        hostname: str | None = None,
    ) -> None:
        """Email a reset link if the account exists.

        The outcome is the same whether or not the account exists. Accounts
        are global: an organization, when given, is only recorded for audit.

        Raises:
            RateLimitedError: If this client has used up its reset attempts.
            OrganizationNotFoundError: If an organization was given but matches nothing.
        """
        email = normalize_email(email)
        self._check_rate_limit(self._reset_limiter, ip_address, email)

        if organization_id not in (None, ""):
            organization_id = self.resolve_organization_id(organization_id, hostname)

        user_id = self._auth_db.find_user_by_email(email)
        if user_id is None:
            logger.info("Password reset requested for non-existent account")
            self._security_logger.log(
                SecurityEvent.PASSWORD_RESET_REQUESTED,
                email=email,
                organization_id=organization_id,
                ip_address=ip_address,
                details={"account_exists": False},
            )
            return

        raw_token = self._password_reset.issue(user_id)
        delivered = self._notifications.send_password_reset(email, self._password_reset.build_reset_link(raw_token))

        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET_REQUESTED,
            email=email,
            user_id=user_id,
            organization_id=organization_id,
            ip_address=ip_address,
            details={"account_exists": True, "email_delivered": delivered},
        )

    def reset_password(self, token: str, new_password: str, ip_address: str | None) -> None:
        """Set a new password with a reset token.

        Raises:
            RateLimitedError: If this client has used up its reset attempts.
            InvalidResetTokenError: If the token is unknown, expired or already used.
        """
        self._check_rate_limit(self._reset_limiter, ip_address)

        try:
            user_id = self._password_reset.reset_password(token, new_password)
        except InvalidResetTokenError:
            self._security_logger.log(SecurityEvent.PASSWORD_RESET_FAILED, ip_address=ip_address)
            raise

        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET_COMPLETED,
            user_id=user_id,
            ip_address=ip_address,
        )

    def verify_session(self, token: str) -> SessionClaims:
        """Validate a bearer token.

        Raises:
            SessionExpiredError: If the token has expired.
            InvalidTokenError: If the token is invalid.
        """
        return self._token_issuer.verify(token)

    def switch_organization(self, claims: SessionClaims, organization_id: int, ip_address: str | None = None) -> str:
        """Issue a token for another organization the user belongs to.

        Raises:
            InvalidTokenError: If the claims carry no user.
            NotOrganizationMemberError: If the user is not in that organization.
        """
        if claims.user_id is None:
            raise InvalidTokenError("Organization switch requires a user token")

        if not self._auth_db.is_member(claims.user_id, organization_id):
            raise NotOrganizationMemberError(f"Not a member of organization {organization_id}")

        roles = self._role_resolver.resolve(claims.user_id, organization_id)
        token = self._token_issuer.issue_organization_switch_token(claims.user_id, organization_id, roles)

        self._security_logger.log(
            SecurityEvent.ORGANIZATION_SWITCHED,
            user_id=claims.user_id,
            organization_id=organization_id,
            ip_address=ip_address,
            details={"from_organization_id": claims.organization_id},
        )
        return token

    def resolve_organization_id(self, explicit: str | int | None, hostname: str | None) -> int:
        """Organization for a public request: explicit id first, then the request host.

        Raises:
            OrganizationNotFoundError: If neither identifies an organization.
        """
        if explicit not in (None, ""):
            try:
                organization_id = int(explicit)
            except (TypeError, ValueError):
                raise OrganizationNotFoundError(f"Invalid organization id: {explicit!r}")
            if organization_id > 0:
                return organization_id

        if hostname:
            organization_id = self._auth_db.find_organization_by_domain(hostname.lower())
            if organization_id is not None:
                return organization_id

        raise OrganizationNotFoundError("Organization could not be determined for this request")

    def issue_organization_token(self, organization_id: int) -> str:
        """Anonymous token identifying only the organization."""
        return self._token_issuer.issue_organization_token(organization_id)

    def cleanup_expired(self) -> tuple[int, int]:
        """Delete expired challenges and trusted devices.

        Returns:
            Tuple of (challenges deleted, devices deleted)
        """
        return self._two_factor.cleanup_expired(), self._trusted_devices.cleanup_expired()
