"""Email service for password reset and address verification messages."""

from email.message import EmailMessage

import aiosmtplib
import structlog

from authledger.config import Settings

logger = structlog.get_logger(__name__)

RESET_TEMPLATE = """Password Reset Request

Hi {name},

You requested a password reset for your {app_name} account. Visit the link
below to choose a new password:

{link}

This link will expire in {ttl} minutes. If you didn't request a password
reset, you can ignore this email.
"""

VERIFY_TEMPLATE = """Verify your email address

Hi {name},

Welcome to {app_name}! Confirm your email address by visiting:

{link}

This link will expire in {ttl} hours.
"""

HTML_WRAPPER = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
<h2>{title}</h2>
<p>Hi {name},</p>
<p>{intro}</p>
<p><a href="{link}">{link}</a></p>
<p><strong>{expiry}</strong></p>
<p>This is an automated message, please do not reply to this email.</p>
</body>
</html>
"""


class EmailService:
    """SMTP delivery of account emails."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def is_configured(self) -> bool:
        """Whether mail transport credentials are present."""
        s = self.settings
        return bool(s.email_host and s.email_username and s.email_password)

    async def send_email(self, to: str, subject: str, text: str, html: str) -> bool:
        """Send a multipart email via SMTP.

        Returns True on success, False on failure.
        """
        if not self.is_configured():
            logger.warning("email_not_configured", to=to, subject=subject)
            return False

        message = EmailMessage()
        message["From"] = self.settings.email_from or self.settings.email_username
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=self.settings.email_host,
                port=self.settings.email_port,
                username=self.settings.email_username,
                password=self.settings.email_password,
                use_tls=self.settings.email_use_tls,
            )
        except Exception as e:
            logger.error("email_send_failed", to=to, subject=subject, error=str(e))
            return False

        logger.info("email_sent", to=to, subject=subject)
        return True

    async def send_password_reset_email(self, email: str, reset_token: str, name: str) -> bool:
        link = f"{self.settings.app_url}/reset-password?token={reset_token}"
        ttl = self.settings.password_reset_ttl_minutes
        text = RESET_TEMPLATE.format(
            name=name, app_name=self.settings.app_name, link=link, ttl=ttl
        )
        html = HTML_WRAPPER.format(
            title="Password Reset Request",
            name=name,
            intro="You requested a password reset for your account. Follow the link to reset your password:",
            link=link,
            expiry=f"This link will expire in {ttl} minutes.",
        )
        return await self.send_email(
            email, f"Password Reset Request - {self.settings.app_name}", text, html
        )

    async def send_email_verification(self, email: str, verification_token: str, name: str) -> bool:
        link = f"{self.settings.app_url}/verify-email?token={verification_token}"
        ttl = self.settings.email_verification_ttl_hours
        text = VERIFY_TEMPLATE.format(
            name=name, app_name=self.settings.app_name, link=link, ttl=ttl
        )
        html = HTML_WRAPPER.format(
            title="Verify your email address",
            name=name,
            intro=f"Welcome to {self.settings.app_name}! Confirm your email address:",
            link=link,
            expiry=f"This link will expire in {ttl} hours.",
        )
        return await self.send_email(
            email, f"Verify your email - {self.settings.app_name}", text, html
        )
