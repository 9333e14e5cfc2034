"""Post-commit notification dispatch for turn events."""

from __future__ import annotations

import logging
from typing import Any

from ..celery_app import deliver_turn_notification
from ..config import settings
from .history_recorder import to_jsonable

logger = logging.getLogger(__name__)


def enqueue_turn_notification(event: str, turn: Any, **payload: Any) -> bool:
    """Queue `event` for `turn`. Never raises; the turn has already been committed."""
    if not settings.NOTIFICATIONS_ENABLED:
        return False
    body = to_jsonable({"turn_number": getattr(turn, "turn_number", None), **payload})
    try:
        deliver_turn_notification.delay(event, str(turn.id), body)
    except Exception:
        logger.exception("Could not enqueue %s notification for turn %s", event, turn.id)
        return False
    return True


def events_for_update(
    *,
    previous_vendor_id: Any,
    new_vendor_id: Any,
    previous_flags: dict[str, bool],
    new_flags: dict[str, bool],
) -> list[tuple[str, dict[str, Any]]]:
    """Notification events implied by one turn update, in dispatch order."""
    events: list[tuple[str, dict[str, Any]]] = []
    if new_vendor_id is not None and new_vendor_id != previous_vendor_id:
        events.append(("vendor_assigned", {"vendor_id": new_vendor_id}))
    raised = [
        tier
        for tier, flag in (("dfo", "needs_dfo_approval"), ("ho", "needs_ho_approval"))
        if new_flags.get(flag) and not previous_flags.get(flag)
    ]
    if raised:
        events.append(("approval_requested", {"tiers": raised}))
    return events
