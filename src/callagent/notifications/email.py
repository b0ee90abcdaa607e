"""Outbound e-mail over SMTP.

Sends are fire-and-log: :meth:`Mailer.send_email` reports failure through its
return value and the log, never by raising, so a flaky mail server cannot
roll back a state transition that already happened.

Configured via the ``[email]`` config table; credentials are read from the
environment variables it names.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)
_ENV_VAR_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_env_var_name(value: str, *, field_name: str) -> str:
    """Validate a configured env var name for a credential field."""
    if not value or not value.strip():
        raise ValueError(f"email.{field_name} must be a non-empty environment variable name")
    name = value.strip()
    if not _ENV_VAR_NAME_RE.fullmatch(name):
        raise ValueError(
            f"email.{field_name} must be a valid environment variable name "
            "(letters, numbers, underscores; cannot start with a number)"
        )
    return name


class EmailConfig(BaseModel):
    """SMTP settings from the ``[email]`` config table."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True
    sender_name: str | None = None
    address_env: str = "CALLAGENT_EMAIL_ADDRESS"
    password_env: str = "CALLAGENT_EMAIL_PASSWORD"
    model_config = ConfigDict(extra="forbid")

    @field_validator("address_env")
    @classmethod
    def _validate_address_env(cls, value: str) -> str:
        return _validate_env_var_name(value, field_name="address_env")

    @field_validator("password_env")
    @classmethod
    def _validate_password_env(cls, value: str) -> str:
        return _validate_env_var_name(value, field_name="password_env")


class Mailer(Protocol):
    """Anything that can deliver an HTML + plain-text e-mail."""

    async def send_email(self, to: str, subject: str, html: str, text: str) -> bool: ...


class SmtpMailer:
    """:class:`Mailer` backed by a blocking SMTP client run in a worker thread."""

    def __init__(self, config: EmailConfig | None = None) -> None:
        self._config = config or EmailConfig()

    def _get_credentials(self) -> tuple[str, str]:
        """Read the sender credentials from the configured environment variables.

        Raises ``RuntimeError`` if either variable is unset.
        """
        address = os.environ.get(self._config.address_env)
        password = os.environ.get(self._config.password_env)
        if not address or not password:
            raise RuntimeError(
                "Missing email credentials: set "
                f"{self._config.address_env} and {self._config.password_env}"
            )
        return address, password

    def _build_message(
        self, sender: str, to: str, subject: str, html: str, text: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = (
            f"{self._config.sender_name} <{sender}>" if self._config.sender_name else sender
        )
        msg["To"] = to
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _smtp_send(self, to: str, subject: str, html: str, text: str) -> None:
        """Blocking SMTP send, intended to be run via ``asyncio.to_thread``."""
        address, password = self._get_credentials()
        msg = self._build_message(address, to, subject, html, text)

        server = smtplib.SMTP(self._config.smtp_host, self._config.smtp_port)
        try:
            if self._config.use_tls:
                server.starttls()
            server.login(address, password)
            server.sendmail(address, [to], msg.as_string())
        finally:
            server.quit()

        logger.info("Email sent to %s: %s", to, subject)

    async def send_email(self, to: str, subject: str, html: str, text: str) -> bool:
        """Send an e-mail; return False (and log) instead of raising on failure."""
        try:
            await asyncio.to_thread(self._smtp_send, to, subject, html, text)
        except (smtplib.SMTPException, OSError, RuntimeError) as exc:
            logger.error("Email to %s failed (%s): %s", to, subject, exc)
            return False
        return True
