"""SMTP delivery of history change notifications.

Delivery is best effort: a failure is logged and reported as ``False`` and
never interrupts the mutation that triggered it.
"""

from __future__ import annotations

import asyncio
import smtplib
from collections.abc import Iterable
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.core.notifications.templates import EmailTemplate

logger = get_logger(__name__)

_SMTP_TIMEOUT_SECONDS = 10


@dataclass(slots=True, frozen=True)
class SmtpConfig:
    enabled: bool
    host: str
    port: int
    username: str
    password: str
    starttls: bool
    from_email: str
    from_name: str

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpConfig:
        return cls(
            enabled=settings.notifications_email_enabled,
            host=settings.notifications_smtp_host.strip(),
            port=settings.notifications_smtp_port,
            username=(settings.notifications_smtp_user or "").strip(),
            password=(settings.notifications_smtp_password or "").strip(),
            starttls=settings.notifications_smtp_starttls,
            from_email=settings.notifications_from_email.strip(),
            from_name=settings.notifications_from_name.strip(),
        )

    @property
    def complete(self) -> bool:
        return bool(self.host and self.from_email)


def unique_recipients(recipients: Iterable[str]) -> list[str]:
    """Strip blanks and drop case-insensitive duplicates, keeping order."""
    seen: set[str] = set()
    result: list[str] = []
    for recipient in recipients:
        address = recipient.strip()
        if address and address.lower() not in seen:
            seen.add(address.lower())
            result.append(address)
    return result


def build_message(
    config: SmtpConfig, recipients: list[str], template: EmailTemplate
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = template.subject
    msg["From"] = (
        formataddr((config.from_name, config.from_email)) if config.from_name else config.from_email
    )
    msg["To"] = ", ".join(recipients)
    # RFC 3834 marker for automated mail.
    msg["Auto-Submitted"] = "auto-generated"
    msg.set_content(template.text_body)
    if template.html_body:
        msg.add_alternative(template.html_body, subtype="html")
    return msg


class EmailClient:
    """Sends rendered templates through the configured SMTP relay."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._config = SmtpConfig.from_settings(settings or get_settings())

    @property
    def enabled(self) -> bool:
        return self._config.enabled and self._config.complete

    async def send_template(self, recipients: Iterable[str], template: EmailTemplate) -> bool:
        """Deliver ``template`` on a worker thread. Returns True on success."""
        addresses = unique_recipients(recipients)
        if not addresses:
            logger.warning("notification_email_no_recipients", subject=template.subject)
            return False
        if not self._config.enabled:
            logger.info("notification_email_disabled", recipients=len(addresses))
            return False
        if not self._config.complete:
            logger.warning(
                "notification_email_config_incomplete",
                smtp_host=bool(self._config.host),
                from_email=bool(self._config.from_email),
            )
            return False

        message = build_message(self._config, addresses, template)
        return await asyncio.to_thread(self._deliver, message, len(addresses))

    def _deliver(self, message: EmailMessage, recipient_count: int) -> bool:
        config = self._config
        try:
            with smtplib.SMTP(
                host=config.host, port=config.port, timeout=_SMTP_TIMEOUT_SECONDS
            ) as smtp:
                if config.starttls:
                    smtp.starttls()
                if config.username:
                    smtp.login(config.username, config.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError):
            logger.exception(
                "notification_email_send_failed",
                subject=message["Subject"],
                recipients=recipient_count,
            )
            return False

        logger.info(
            "notification_email_sent", subject=message["Subject"], recipients=recipient_count
        )
        return True
