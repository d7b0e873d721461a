"""Account mails carrying activation and password reset links."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol
from urllib.parse import urlencode

from .config import Settings
from .domain.account import UserAccount

logger = logging.getLogger(__name__)


class AccountNotifier(Protocol):
    def send_activation_email(self, account: UserAccount) -> None: ...

    def send_creation_email(self, account: UserAccount) -> None: ...

    def send_password_reset_email(self, account: UserAccount) -> None: ...


class MailNotifier:
    """Deliver account mails over SMTP, or log them when no SMTP host is configured."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send_activation_email(self, account: UserAccount) -> None:
        link = self._link("/account/activate", account.activation_key)
        self._send(
            account,
            "Account activation",
            f"Hello {account.login},\n\nActivate your account by opening:\n{link}\n",
        )

    def send_creation_email(self, account: UserAccount) -> None:
        link = self._link("/account/reset/finish", account.reset_key)
        self._send(
            account,
            "Account created",
            f"Hello {account.login},\n\nAn account was created for you. Choose a password at:\n{link}\n",
        )

    def send_password_reset_email(self, account: UserAccount) -> None:
        link = self._link("/account/reset/finish", account.reset_key)
        self._send(
            account,
            "Password reset",
            f"Hello {account.login},\n\nReset your password within 24 hours at:\n{link}\n",
        )

    def _link(self, path: str, key: str | None) -> str:
        return f"{self._settings.public_base_url.rstrip('/')}{path}?{urlencode({'key': key or ''})}"

    def _send(self, account: UserAccount, subject: str, body: str) -> None:
        settings = self._settings
        if not settings.smtp_host:
            logger.info("smtp not configured, mail %r for %s:\n%s", subject, account.email, body)
            return

        message = EmailMessage()
        message["From"] = settings.smtp_from
        message["To"] = account.email
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as smtp:
                if settings.smtp_starttls:
                    smtp.starttls()
                if settings.smtp_user:
                    smtp.login(settings.smtp_user, settings.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("failed to send mail %r to %s: %s", subject, account.email, exc)
            return
        logger.debug("Sent mail %r to %s", subject, account.email)
