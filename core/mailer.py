"""
core/mailer.py -- Outbound mail boundary.

Delivery and templating belong to an external service; the core only needs
something it can hand (recipients, subject, body) to. LogMailer is the default
so a development server works without SMTP credentials.

Bodies carry activation / reset links with raw tokens in them, so no Mailer
implementation in this repo ever logs a body.

Routers queue deliver() on FastAPI BackgroundTasks: mail runs after the
response is sent and a delivery failure is logged, never returned to the
caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger("campusgate.mail")

PRODUCT_NAME = "management-app"


class Mailer(ABC):
    """Interface for mail delivery."""

    @abstractmethod
    def send(self, recipients: list[str], subject: str, body: str) -> None:
        """Hand one message to the transport. May raise; deliver() logs it."""


class LogMailer(Mailer):
    def send(self, recipients: list[str], subject: str, body: str) -> None:
        logger.info("Mail queued to %d recipient(s): %s", len(recipients), subject)


def deliver(mailer: Mailer, recipients: list[str], subject: str, body: str) -> None:
    """Send one message; failures are logged with the subject line only."""
    try:
        mailer.send(recipients, subject, body)
    except Exception:
        logger.exception("Mail delivery failed: %s", subject)


# ---------------------------------------------------------------------------
# Links and bodies
# ---------------------------------------------------------------------------


def activation_link(domain: str, organization_id: str | None, token: str) -> str:
    if organization_id:
        return f"https://{domain}/organizations/{organization_id}?t={token}"
    return f"https://{domain}/activate?t={token}"


def reset_link(domain: str, token: str) -> str:
    return f"https://{domain}/reset-password?t={token}"


def welcome_organization(organization_name: str, admin_email: str, plans: list[str], link: str) -> tuple[str, str]:
    subject = f"Welcome to the {PRODUCT_NAME}"
    body = (
        f"The organization {organization_name} has been created with {admin_email} as its School Admin.\n"
        f"Active plans: {', '.join(plans) or 'none'}.\n\n"
        f"Activate your account within 30 days: {link}\n"
    )
    return subject, body


def welcome_user(organization_name: str, role: str, link: str) -> tuple[str, str]:
    subject = f"You have been invited to {organization_name}"
    body = (
        f"You have been added to {organization_name} as {role}.\n\n"
        f"Activate your account within 30 days: {link}\n"
    )
    return subject, body


def password_reset(link: str) -> tuple[str, str]:
    subject = "Reset your password"
    body = (
        "We received a request to reset your password.\n\n"
        f"Choose a new one within 24 hours: {link}\n\n"
        "If you did not ask for this, you can ignore this message.\n"
    )
    return subject, body
