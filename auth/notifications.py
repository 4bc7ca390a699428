"""Outbound auth emails.

Delivery is best effort: gateway failures are logged and reported as False,
never raised into the login, reset or registration flow.
"""

import html
import logging

from auth.config import AuthConfig
from clients.email_client import EmailGatewayClient, EmailGatewayError

logger = logging.getLogger(__name__)


class NotificationSender:
    """Compose and send auth emails through the email gateway."""

    def __init__(self, email_client: EmailGatewayClient, config: AuthConfig):
        self._email_client = email_client
        self._config = config

    def send_email(self, to: str, subject: str, text_body: str, html_body: str | None = None) -> bool:
        """Send one email. Returns False instead of raising on gateway failure."""
        try:
            self._email_client.send_email(to=to, subject=subject, body=text_body, html_body=html_body)
        except EmailGatewayError as e:
            logger.warning(f"Email to {to} not delivered: {e}")
            return False
        return True

    def send_two_factor_code(self, to: str, full_name: str, code: str) -> bool:
        expiry = self._config.two_factor_code_expiry_minutes
        subject = f"{self._config.app_name} - Your verification code"
        text_body = (
            f"Hello {full_name or to},\n\n"
            f"Your verification code is: {code}\n\n"
            f"This code expires in {expiry} minutes. "
            "If you did not try to sign in, you can ignore this email."
        )
        html_body = (
            f"<p>Hello {html.escape(full_name or to)},</p>"
            f"<p>Your verification code is: <strong>{code}</strong></p>"
            f"<p>This code expires in {expiry} minutes. "
            "If you did not try to sign in, you can ignore this email.</p>"
        )
        return self.send_email(to, subject, text_body, html_body)

    def send_password_reset(self, to: str, reset_link: str) -> bool:
        expiry = self._config.reset_token_expiry_minutes
        subject = f"{self._config.app_name} - Password reset"
        text_body = (
            "A password reset was requested for your account.\n\n"
            f"Reset your password: {reset_link}\n\n"
            f"This link expires in {expiry} minutes and can be used once."
        )
        html_body = (
            "<p>A password reset was requested for your account.</p>"
            f'<p><a href="{reset_link}">Reset your password</a></p>'
            f"<p>This link expires in {expiry} minutes and can be used once.</p>"
        )
        return self.send_email(to, subject, text_body, html_body)

    def send_admin_verification(self, admin_emails: list[str], full_name: str, email: str) -> int:
        """Ask administrators to approve a new staff account.

        Returns:
            Number of administrators successfully notified.
        """
        if not admin_emails:
            logger.warning(f"No administrators to notify about new account {email}")
            return 0

        subject = f"{self._config.app_name} - New account awaiting approval"
        text_body = (
            f"{full_name} ({email}) registered as staff and is waiting for approval.\n\n"
            "Review the account from the user management page."
        )
        return sum(1 for admin in admin_emails if self.send_email(admin, subject, text_body))
