from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from brewbean.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #3b2a1a; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; letter-spacing: 8px; font-weight: bold; color: #6f4e37; background: #f5ede3; padding: 16px 24px; border-radius: 8px; display: inline-block; }
        .footer { margin-top: 40px; font-size: 12px; color: #7a6a5a; }
"""


class EmailService:
    """Sends the Brew&Bean transactional emails over SMTP.

    Only two messages exist: the password reset OTP and the reset
    confirmation. When SMTP is not configured the message is logged
    instead of sent and counts as delivered.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Brew&Bean Coffee",
        base_url: Optional[str] = None,
        otp_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _footer(self) -> str:
        year = datetime.now(timezone.utc).year
        return (
            "<p>Best regards,<br>The Brew&amp;Bean Coffee Team</p>"
            f"<p>&copy; {year} Brew&amp;Bean Coffee Company. All rights reserved.</p>"
        )

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            try:
                server.starttls(context=context)
            except (smtplib.SMTPException, OSError):
                server.close()
                raise
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message. Returns False on any SMTP or network failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            # Dev mode: the body carries the OTP so only the envelope is logged
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=recipient,
        )
        try:
            with self._open_connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=recipient, error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            # Timeouts, refused connections and protocol errors
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_otp_email(self, to_email: str, otp: str, name: str = "User") -> bool:
        """Send the six digit password reset code."""
        subject = "Password Reset OTP - Brew&Bean Coffee"
        safe_name = html.escape(name)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Password Reset Request</h1>
        <p>Hello {safe_name},</p>
        <p>We received a request to reset your password for your Brew&amp;Bean Coffee account.</p>
        <p>Your one-time code is:</p>
        <p class="code">{otp}</p>
        <p><em>This code will expire in {self.otp_ttl_minutes} minutes</em></p>
        <p>If you didn't request this, you can safely ignore this email. Your password will not change.</p>
        <div class="footer">{self._footer()}</div>
    </div>
</body>
</html>
"""

        text_body = f"""Password Reset Request

Hello {name},

We received a request to reset your password for your Brew&Bean Coffee account.

Your one-time code is: {otp}

This code will expire in {self.otp_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
The Brew&Bean Coffee Team
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset_confirmation(self, to_email: str, name: str = "User") -> bool:
        """Tell the user their password was reset."""
        subject = "Password Reset Successful - Brew&Bean Coffee"
        safe_name = html.escape(name)
        login_url = f"{self.base_url}/login"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Password Reset Successful</h1>
        <p>Hello {safe_name},</p>
        <p>Your password has been reset and every device that was signed in has been signed out.</p>
        <p>You can now log in to your Brew&amp;Bean Coffee account with your new password: <a href="{login_url}">{login_url}</a></p>
        <p>If you didn't make this change, please contact support immediately.</p>
        <div class="footer"><p>Thank you for choosing Brew&amp;Bean Coffee!</p>{self._footer()}</div>
    </div>
</body>
</html>
"""

        text_body = f"""Password Reset Successful

Hello {name},

Your password has been reset and every device that was signed in has been signed out.

You can now log in to your Brew&Bean Coffee account with your new password: {login_url}

If you didn't make this change, please contact support immediately.

---
The Brew&Bean Coffee Team
"""

        return self._send_email(to_email, subject, html_body, text_body)
