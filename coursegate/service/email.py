from __future__ import annotations

import smtplib
import ssl
from contextlib import contextmanager
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Iterator, List, Optional, Protocol, Tuple

from coursegate.logging import get_logger

logger = get_logger(__name__)


def mask_email(email: str) -> str:
    """Mask an address for display and logs: ``alice@example.com`` -> ``al***@example.com``."""
    if not isinstance(email, str) or "@" not in email:
        return "redacted"
    local, domain = email.rsplit("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer(Protocol):
    """Outbound mail collaborator used for verification codes."""

    def send_two_factor_code(self, to_email: str, code: str, name: Optional[str] = None) -> bool:
        ...


_STYLE = (
    "body { font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }"
    " .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }"
    " .code { font-size: 32px; letter-spacing: 8px; font-weight: 700; background: #f1f5f9;"
    " padding: 16px 24px; border-radius: 8px; display: inline-block; }"
    " .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px;"
    " border-radius: 8px; text-decoration: none; font-weight: 600; }"
    " .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }"
)


def _compose(
    product: str,
    heading: str,
    paragraphs: List[str],
    *,
    code: Optional[str] = None,
    link: Optional[Tuple[str, str]] = None,
) -> Tuple[str, str]:
    """Render one message as (html, text) from the same plain-text paragraphs.

    ``code`` is shown as a large token after the first paragraph; ``link`` is a
    (label, url) call to action placed there instead.
    """
    html: List[str] = [f"<h1>{escape(heading)}</h1>"]
    text: List[str] = [heading, ""]
    for index, paragraph in enumerate(paragraphs):
        html.append(f"<p>{escape(paragraph)}</p>")
        text.extend([paragraph, ""])
        if index:
            continue
        if code is not None:
            html.append(f'<p style="margin: 30px 0;"><span class="code">{escape(code)}</span></p>')
            text.extend([code, ""])
        if link is not None:
            label, url = link
            html.append(f'<p style="margin: 30px 0;"><a href="{escape(url)}" class="button">{escape(label)}</a></p>')
            text.extend([url, ""])
    if link is not None:
        html.append(f"<p>If the button doesn't work, copy and paste this URL: {escape(link[1])}</p>")
    document = (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        f"<style>{_STYLE}</style></head><body><div class=\"container\">"
        + "\n".join(html)
        + f'<div class="footer"><p>{escape(product)}</p></div></div></body></html>'
    )
    return document, "\n".join(text).rstrip() + "\n"


class EmailService:
    """Transactional mail over SMTP (STARTTLS or implicit TLS).

    Without an SMTP host the service runs in dev mode: messages are logged
    instead of sent and every send reports success.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        smtp_timeout: float = 10.0,
        from_email: Optional[str] = None,
        from_name: str = "CourseGate",
        base_url: Optional[str] = None,
        code_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 15,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.smtp_timeout = smtp_timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.code_ttl_minutes = code_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        msg.set_content(text_body or "This message requires an HTML capable mail client.")
        msg.add_alternative(html_body, subtype="html")
        return msg

    @contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout) as server:
                server.starttls(context=context)
                yield server
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.smtp_timeout
            ) as server:
                yield server

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; returns False on any transport failure instead of raising."""
        recipient = mask_email(to_email)
        if not self.is_configured:
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
            with self._connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg, from_addr=self.from_email, to_addrs=[to_email])
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, smtp_code=e.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=recipient, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error("email_smtp_error", to=recipient, error_type=type(e).__name__, error=str(e))
            return False
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=recipient, host=self.smtp_host, error=str(e))
            return False
        except OSError as e:
            # refused connection, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_two_factor_code(self, to_email: str, code: str, name: Optional[str] = None) -> bool:
        """Send a one-time login code."""
        html_body, text_body = _compose(
            self.from_name,
            "Verify your sign-in",
            [
                f"Hello {name}," if name else "Hello,",
                f"Your {self.from_name} verification code is shown above. Enter it to finish signing in.",
                f"This code expires in {self.code_ttl_minutes} minutes and can only be used once.",
                "If you didn't try to sign in, change your password.",
            ],
            code=code,
        )
        return self.send(to_email, f"Your {self.from_name} verification code", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = _compose(
            self.from_name,
            "Reset your password",
            [
                "Someone asked to reset the password on this account. Use the link below to pick a new one.",
                f"The link expires in {self.reset_ttl_minutes} minutes and works once.",
                "If this wasn't you, ignore this email; your password stays the same.",
            ],
            link=("Reset Password", reset_url),
        )
        return self.send(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_two_factor_changed(self, to_email: str, enabled: bool) -> bool:
        """Tell the account owner that two-factor sign-in was switched on or off."""
        state = "enabled" if enabled else "disabled"
        html_body, text_body = _compose(
            self.from_name,
            f"Two-factor authentication {state}",
            [
                f"Two-factor authentication was {state} on your {self.from_name} account.",
                "You will now receive a code by email each time you sign in."
                if enabled
                else "You will no longer be asked for an email code when signing in.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self.send(to_email, f"Two-factor authentication {state}", html_body, text_body)
