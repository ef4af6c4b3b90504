"""Notification utilities for customer history change alerts."""

from app.core.notifications.email_client import EmailClient
from app.core.notifications.templates import EmailTemplate, build_history_change_email

__all__ = [
    "EmailClient",
    "EmailTemplate",
    "build_history_change_email",
]
