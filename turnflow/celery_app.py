"""
Celery worker delivering best-effort turn notifications to the configured webhook.
"""
from celery import Celery
import requests
import logging
from .config import settings

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = ("vendor_assigned", "approval_requested", "approval_decision")

celery_app = Celery(
    "turnflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
)


def post_webhook(payload: dict) -> tuple[bool, str | None]:
    """POST one event to the notification webhook."""
    if not settings.NOTIFICATION_WEBHOOK_URL:
        return False, "WEBHOOK_NOT_CONFIGURED"

    try:
        response = requests.post(
            settings.NOTIFICATION_WEBHOOK_URL,
            json=payload,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS
        )
    except requests.RequestException as e:
        return False, f"EXCEPTION: {e}"

    if 200 <= response.status_code < 300:
        return True, None
    return False, f"HTTP_{response.status_code}: {response.text[:200]}"


@celery_app.task(name="deliver_turn_notification")
def deliver_turn_notification(event: str, turn_id: str, payload: dict):
    """
    Deliver a turn event. Failures are logged only: the turn mutation that
    produced the event has already committed.
    """
    if event not in NOTIFICATION_EVENTS:
        logger.warning("Dropping unknown notification event %s for turn %s", event, turn_id)
        return {"delivered": False, "error": "UNKNOWN_EVENT"}

    success, error = post_webhook({"event": event, "turn_id": turn_id, **payload})
    if success:
        logger.info("Delivered %s notification for turn %s", event, turn_id)
    elif error == "WEBHOOK_NOT_CONFIGURED":
        logger.info("Skipping %s notification for turn %s: no webhook configured", event, turn_id)
    else:
        logger.warning("Failed to deliver %s notification for turn %s: %s", event, turn_id, error)
    return {"delivered": success, "error": error}
