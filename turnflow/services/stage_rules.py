"""Stage requirement evaluation and turn status/stage invariants.

Stage requirements are data (boolean flags on ``TurnStage``) and are evaluated
uniformly here, never by branching on a stage key.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from ..domain_errors import ValidationError
from ..models import TURN_STATUSES

FINAL_STATUS = "complete"
WORK_PERFORMED_STATUSES: frozenset[str] = frozenset({"in_progress", "change_order", "complete", "scan_360"})

REQUIREMENT_LABELS: dict[str, str] = {
    "vendor": "vendor assignment",
    "amount": "an estimated cost greater than zero",
    "lock_box": "a current lock box code on the property",
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def status_for_stage(stage: Any) -> str | None:
    """Status a turn takes when it enters `stage` (final stage maps to `complete`)."""
    if stage is None:
        return None
    if stage.is_final:
        return FINAL_STATUS
    if stage.key in TURN_STATUSES:
        return stage.key
    return None


def stage_matches_status(stage: Any, status: str) -> bool:
    if status == FINAL_STATUS:
        return bool(stage.is_final)
    return stage.key == status


def find_stage_for_status(stages: Iterable[Any], status: str) -> Any | None:
    """Pick the active stage a status-only change should move the turn to."""
    for stage in stages:
        if stage.is_active and stage_matches_status(stage, status):
            return stage
    return None


def order_stages(stages: Iterable[Any]) -> list[Any]:
    return sorted(stages, key=lambda stage: (stage.sequence or 0, stage.key))


def missing_stage_requirements(
    stage: Any,
    *,
    vendor_id: UUID | None,
    estimated_cost: Decimal | None,
    has_lock_box: bool,
) -> list[str]:
    """Return unmet non-approval requirements of `stage`, in a stable order."""
    missing: list[str] = []
    if stage.requires_vendor and vendor_id is None:
        missing.append("vendor")
    if stage.requires_amount and (estimated_cost is None or Decimal(estimated_cost) <= 0):
        missing.append("amount")
    if stage.requires_lock_box and not has_lock_box:
        missing.append("lock_box")
    return missing


def ensure_stage_requirements(
    stage: Any,
    *,
    vendor_id: UUID | None,
    estimated_cost: Decimal | None,
    has_lock_box: bool,
) -> None:
    missing = missing_stage_requirements(
        stage,
        vendor_id=vendor_id,
        estimated_cost=estimated_cost,
        has_lock_box=has_lock_box,
    )
    if not missing:
        return
    labels = ", ".join(REQUIREMENT_LABELS[item] for item in missing)
    raise ValidationError(
        code="TURN_STAGE_REQUIREMENTS_UNMET",
        message=f"Stage '{stage.key}' requires {labels}",
        details={"stage": stage.key, "missing": missing},
    )


def ensure_actual_cost_allowed(*, status: str, actual_cost: Decimal | None) -> None:
    if actual_cost is not None and status not in WORK_PERFORMED_STATUSES:
        raise ValidationError(
            code="TURN_ACTUAL_COST_PREMATURE",
            message="Actual cost can only be recorded once work has started",
            details={"status": status, "allowed": sorted(WORK_PERFORMED_STATUSES)},
        )


def resolve_completion_date(
    *,
    status: str,
    current: datetime | None,
    requested: datetime | None = None,
    at: datetime | None = None,
) -> datetime | None:
    """completion_date is set if and only if the turn is complete."""
    if status != FINAL_STATUS:
        if requested is not None:
            raise ValidationError(
                code="TURN_COMPLETION_DATE_PREMATURE",
                message="Completion date can only be set on a complete turn",
                details={"status": status},
            )
        return None
    return requested or current or at or now_utc()
