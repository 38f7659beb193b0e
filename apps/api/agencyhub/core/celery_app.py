import logging

from celery import Celery

from agencyhub.core.config import get_settings
from agencyhub.core.database import SessionLocal
from agencyhub.metrics import observe_portal_cleanup
from agencyhub.portal.repository import PortalAccessRepository, PortalSessionRepository

settings = get_settings()
logger = logging.getLogger("agencyhub.portal")

celery_app = Celery("agencyhub_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "portal-cleanup-hourly": {"task": "agencyhub.tasks.portal_cleanup", "schedule": 3600.0},
}


def run_portal_cleanup(session_factory=SessionLocal) -> dict[str, int]:  # type: ignore[no-untyped-def]
    with session_factory() as session:
        tokens = PortalAccessRepository(session).cleanup_expired()
        sessions = PortalSessionRepository(session).cleanup_expired()

    observe_portal_cleanup("access_tokens", tokens)
    observe_portal_cleanup("sessions", sessions)
    logger.info("portal_cleanup_completed", extra={"reason": f"tokens={tokens} sessions={sessions}"})
    return {"access_tokens": tokens, "sessions": sessions}


@celery_app.task(name="agencyhub.tasks.portal_cleanup")
def portal_cleanup_task() -> dict[str, int]:
    return run_portal_cleanup()


@celery_app.task(name="agencyhub.tasks.send_portal_magic_link")
def send_portal_magic_link_task(email: str, link_url: str) -> None:
    from agencyhub.portal.delivery import send_magic_link_email

    send_magic_link_email(email, link_url)
