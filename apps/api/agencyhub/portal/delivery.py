"""Hand-off of portal magic links to the client's inbox."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from threading import Lock
from typing import Protocol
from urllib.parse import urlencode

from agencyhub.core.celery_app import celery_app
from agencyhub.core.config import get_settings

logger = logging.getLogger("agencyhub.portal")

SEND_MAGIC_LINK_TASK = "agencyhub.tasks.send_portal_magic_link"


class MagicLinkDelivery(Protocol):
    def deliver(self, email: str, link_url: str) -> None: ...


def build_magic_link_url(token: str) -> str:
    return f"{get_settings().portal_login_url}?{urlencode({'token': token})}"


class CeleryMagicLinkDelivery:
    """Queues the email so the request never waits on the mail server."""

    def deliver(self, email: str, link_url: str) -> None:
        celery_app.send_task(SEND_MAGIC_LINK_TASK, kwargs={"email": email, "link_url": link_url})


def send_magic_link_email(email: str, link_url: str) -> None:
    settings = get_settings()
    message = EmailMessage()
    message["Subject"] = f"Your {settings.app_name} portal login link"
    message["From"] = settings.mail_from
    message["To"] = email
    message.set_content(
        f"Use the link below to sign in to your client portal.\n\n{link_url}\n\n"
        f"The link works once and expires in {settings.portal_magic_link_minutes} minutes."
    )
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
        server.send_message(message)
    logger.info("portal_magic_link_sent")


_DELIVERY: MagicLinkDelivery | None = None
_DELIVERY_LOCK = Lock()


def get_magic_link_delivery() -> MagicLinkDelivery:
    global _DELIVERY
    with _DELIVERY_LOCK:
        if _DELIVERY is None:
            _DELIVERY = CeleryMagicLinkDelivery()
        return _DELIVERY


def set_magic_link_delivery(delivery: MagicLinkDelivery | None) -> None:
    """Swap the delivery channel; ``None`` restores the queued default."""

    global _DELIVERY
    with _DELIVERY_LOCK:
        _DELIVERY = delivery
