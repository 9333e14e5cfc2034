"""Turn audit trail writer.

History rows are part of the mutation's transaction: they are added and flushed
on the caller's session before the caller commits, so a failed history insert
rolls the whole mutation back.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ..models import TURN_HISTORY_ACTIONS, TurnHistory
from .stage_rules import now_utc

SNAPSHOT_FIELDS: tuple[str, ...] = (
    "id",
    "turn_number",
    "property_id",
    "status",
    "priority",
    "stage_id",
    "vendor_id",
    "estimated_cost",
    "actual_cost",
    "move_out_date",
    "due_date",
    "completion_date",
    "scope_of_work",
    "notes",
    "power_status",
    "water_status",
    "gas_status",
    "trash_out_needed",
    "appliances_needed",
    "needs_dfo_approval",
    "needs_ho_approval",
    "dfo_approved_by",
    "dfo_approved_at",
    "ho_approved_by",
    "ho_approved_at",
    "rejection_reason",
    "deleted_at",
)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    return value


def snapshot_turn(turn: Any) -> dict[str, Any]:
    """JSON-safe full snapshot of the turn's audited fields."""
    return {name: to_jsonable(getattr(turn, name, None)) for name in SNAPSHOT_FIELDS}


def record(
    db: Session,
    *,
    turn_id: UUID,
    action: str,
    actor_id: UUID | None,
    previous_value: Any = None,
    new_value: Any = None,
    comment: str | None = None,
    snapshot: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> TurnHistory:
    """Append one history row for `turn_id` and flush it with the enclosing mutation."""
    if action not in TURN_HISTORY_ACTIONS:
        raise ValueError(f"Unknown turn history action: {action}")

    entry = TurnHistory(
        turn_id=turn_id,
        action=action,
        changed_by=actor_id,
        comment=comment,
        changed_data=to_jsonable(snapshot or {}),
        created_at=at or now_utc(),
    )
    if action == "stage_change":
        entry.previous_stage_id = previous_value
        entry.new_stage_id = new_value
    elif action in {"status_change", "created", "deleted"}:
        entry.previous_status = previous_value
        entry.new_status = new_value

    db.add(entry)
    db.flush()
    return entry


def record_transition(
    db: Session,
    *,
    turn_id: UUID,
    previous_status: str | None,
    new_status: str | None,
    previous_stage_id: UUID | None,
    new_stage_id: UUID | None,
    actor_id: UUID | None,
    comment: str | None,
    snapshot: dict[str, Any],
) -> list[TurnHistory]:
    """Write the mandatory status_change / stage_change rows; nothing if neither changed."""
    entries: list[TurnHistory] = []
    # Rows of one transition get strictly increasing timestamps.
    at = now_utc()
    if new_status != previous_status:
        entries.append(
            record(
                db,
                turn_id=turn_id,
                action="status_change",
                actor_id=actor_id,
                previous_value=previous_status,
                new_value=new_status,
                comment=comment or f"Status changed from {previous_status} to {new_status}",
                snapshot=snapshot,
                at=at,
            )
        )
    if new_stage_id != previous_stage_id:
        entries.append(
            record(
                db,
                turn_id=turn_id,
                action="stage_change",
                actor_id=actor_id,
                previous_value=previous_stage_id,
                new_value=new_stage_id,
                comment=comment or "Stage updated",
                snapshot=snapshot,
                at=at + timedelta(microseconds=len(entries)),
            )
        )
    return entries
