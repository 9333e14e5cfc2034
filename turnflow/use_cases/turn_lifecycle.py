"""Turn lifecycle use-cases: creation, stage/status transitions, soft delete and history reads."""
from __future__ import annotations

import logging
import secrets
import uuid
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import Actor
from ..domain_errors import ApprovalRequired, Conflict, NotFound, ValidationError
from ..models import Property, Turn, TurnHistory, TurnStage, Vendor
from ..schemas import TurnCreate, TurnUpdate
from ..services import history_recorder
from ..services.lockbox_rules import has_current_code
from ..services.notifications import enqueue_turn_notification, events_for_update
from ..services.stage_rules import (
    ensure_actual_cost_allowed,
    ensure_stage_requirements,
    find_stage_for_status,
    now_utc,
    order_stages,
    resolve_completion_date,
    status_for_stage,
)
from .approval_workflow import get_turn_or_404, evaluate_approval
from .lockbox_ledger import lock_box_is_current
from .stage_registry import get_default_stage

logger = logging.getLogger(__name__)

# Columns that cannot be cleared with an explicit null.
NON_NULLABLE_FIELDS: frozenset[str] = frozenset({"status", "priority", "trash_out_needed", "appliances_needed"})
# Applied by the transition logic rather than copied verbatim.
TRANSITION_FIELDS: frozenset[str] = frozenset({"status", "stage_id", "completion_date"})
# Fields whose change re-checks the current stage's requirements.
REQUIREMENT_FIELDS: frozenset[str] = frozenset({"vendor_id", "estimated_cost"})

MAX_TURN_NUMBER_ATTEMPTS = 5


def _get_property_or_404(*, db: Session, property_id: UUID) -> Property:
    prop = db.query(Property).filter(Property.id == property_id).first()
    if not prop:
        raise NotFound(
            code="PROPERTY_NOT_FOUND",
            message="Property not found",
            details={"property_id": str(property_id)},
        )
    return prop


def _ensure_vendor(*, db: Session, vendor_id: UUID) -> Vendor:
    vendor = db.query(Vendor).filter(Vendor.id == vendor_id).first()
    if not vendor or vendor.is_active is False:
        raise NotFound(
            code="VENDOR_NOT_FOUND",
            message="Vendor not found",
            details={"vendor_id": str(vendor_id)},
        )
    return vendor


def _get_active_stage_by_id(*, db: Session, stage_id: UUID) -> TurnStage:
    stage = db.query(TurnStage).filter(TurnStage.id == stage_id).first()
    if not stage or not stage.is_active:
        raise NotFound(
            code="STAGE_NOT_FOUND",
            message="Stage not found or inactive",
            details={"stage_id": str(stage_id)},
        )
    return stage


def _current_stage(*, db: Session, turn: Turn) -> TurnStage | None:
    if turn.stage_id is None:
        return None
    return db.query(TurnStage).filter(TurnStage.id == turn.stage_id).first()


def _generate_turn_number(db: Session) -> str:
    year = now_utc().year
    for _ in range(MAX_TURN_NUMBER_ATTEMPTS):
        candidate = f"TURN-{year}-{secrets.randbelow(1_000_000):06d}"
        if not db.query(Turn).filter(Turn.turn_number == candidate).first():
            return candidate
    raise Conflict(
        code="TURN_NUMBER_EXHAUSTED",
        message="Could not allocate a unique turn number; retry the request",
    )


def _commit_turn(db: Session, turn_id: UUID) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise Conflict(
            code="TURN_VERSION_CONFLICT",
            message="Turn was modified concurrently; reload and retry",
            details={"turn_id": str(turn_id)},
        )


def get_turn_use_case(*, db: Session, turn_id: UUID) -> Turn:
    return get_turn_or_404(db=db, turn_id=turn_id)


def list_turns_use_case(
    *,
    db: Session,
    status: str | None = None,
    stage_key: str | None = None,
    property_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Turn]:
    query = db.query(Turn).filter(Turn.deleted_at.is_(None))
    if status:
        query = query.filter(Turn.status == status)
    if property_id:
        query = query.filter(Turn.property_id == property_id)
    if stage_key:
        query = query.join(TurnStage, Turn.stage_id == TurnStage.id).filter(TurnStage.key == stage_key)
    return query.order_by(Turn.created_at.desc()).offset(offset).limit(limit).all()


def list_turn_history_use_case(*, db: Session, turn_id: UUID) -> list[TurnHistory]:
    """Full audit trail, oldest first. Soft-deleted turns keep their history readable."""
    turn = get_turn_or_404(db=db, turn_id=turn_id, include_deleted=True)
    return db.query(TurnHistory).filter(
        TurnHistory.turn_id == turn.id,
    ).order_by(TurnHistory.created_at, TurnHistory.id).all()


def create_turn_use_case(*, db: Session, data: TurnCreate, actor: Actor) -> Turn:
    """Open a turn on a property in the default stage."""
    prop = _get_property_or_404(db=db, property_id=data.property_id)
    if data.vendor_id is not None:
        _ensure_vendor(db=db, vendor_id=data.vendor_id)

    stage = get_default_stage(db=db)
    if stage is None:
        raise Conflict(
            code="STAGE_DEFAULT_MISSING",
            message="No active default stage is configured",
        )
    ensure_stage_requirements(
        stage,
        vendor_id=data.vendor_id,
        estimated_cost=data.estimated_cost,
        has_lock_box=has_current_code(prop),
    )

    status = status_for_stage(stage) or "draft"
    now = now_utc()
    turn = Turn(
        **data.model_dump(),
        id=uuid.uuid4(),
        turn_number=_generate_turn_number(db),
        status=status,
        stage_id=stage.id,
        stage_entered_at=now,
        completion_date=resolve_completion_date(status=status, current=None, at=now),
        created_by=actor.id,
        updated_by=actor.id,
    )

    evaluation = evaluate_approval(
        db=db,
        turn_id=turn.id,
        estimated_cost=data.estimated_cost,
        actual_cost=None,
        decisions=[],
    )
    for field, value in evaluation.flags().items():
        setattr(turn, field, value)

    db.add(turn)
    db.flush()
    history_recorder.record(
        db,
        turn_id=turn.id,
        action="created",
        actor_id=actor.id,
        new_value=status,
        comment=f"Created turn {turn.turn_number}",
        snapshot=history_recorder.snapshot_turn(turn),
    )
    db.commit()
    db.refresh(turn)
    logger.info(
        "turn.created turn=%s number=%s property=%s actor=%s",
        turn.id, turn.turn_number, prop.id, actor.id,
        extra={"turn_id": str(turn.id), "property_id": str(prop.id), "actor_id": str(actor.id)},
    )

    if turn.vendor_id is not None:
        enqueue_turn_notification("vendor_assigned", turn, vendor_id=turn.vendor_id)
    if turn.needs_dfo_approval or turn.needs_ho_approval:
        tiers = [tier for tier, flag in (("dfo", turn.needs_dfo_approval), ("ho", turn.needs_ho_approval)) if flag]
        enqueue_turn_notification("approval_requested", turn, tiers=tiers)
    return turn


def _resolve_target_stage(*, db: Session, turn: Turn, changes: dict[str, Any]) -> TurnStage | None:
    """Stage the update moves the turn to, or None when the stage does not change."""
    if "stage_id" in changes:
        stage_id = changes["stage_id"]
        if stage_id is None:
            raise ValidationError(
                code="TURN_STAGE_REQUIRED",
                message="A turn's stage cannot be cleared",
            )
        unchanged = stage_id == turn.stage_id
        target = _current_stage(db=db, turn=turn) if unchanged else _get_active_stage_by_id(db=db, stage_id=stage_id)
        requested_status = changes.get("status")
        derived = status_for_stage(target) if target is not None else None
        if requested_status is not None and derived is not None and requested_status != derived:
            raise ValidationError(
                code="TURN_STATUS_STAGE_MISMATCH",
                message=f"Status '{requested_status}' does not match stage '{target.key}'",
                details={"status": requested_status, "stage": target.key, "expected_status": derived},
            )
        return None if unchanged else target

    requested_status = changes.get("status")
    if requested_status is None or requested_status == turn.status:
        return None
    stages = db.query(TurnStage).filter(TurnStage.is_active == True).all()  # noqa: E712
    target = find_stage_for_status(order_stages(stages), requested_status)
    if target is None:
        raise ValidationError(
            code="TURN_STATUS_NO_STAGE",
            message=f"No active stage corresponds to status '{requested_status}'",
            details={"status": requested_status},
        )
    if target.id == turn.stage_id:
        return None
    return target


def update_turn_use_case(*, db: Session, turn_id: UUID, data: TurnUpdate, actor: Actor) -> Turn:
    """Apply a partial update; validates the transition and writes its mandatory history."""
    changes = data.changes()
    for field in NON_NULLABLE_FIELDS & set(changes):
        if changes[field] is None:
            raise ValidationError(
                code="TURN_FIELD_REQUIRED",
                message=f"'{field}' cannot be cleared",
                details={"field": field},
            )

    turn = get_turn_or_404(db=db, turn_id=turn_id, for_update=True)
    if data.expected_version is not None and data.expected_version != turn.version:
        raise Conflict(
            code="TURN_VERSION_CONFLICT",
            message="Turn was modified since it was read; reload and retry",
            details={"expected_version": data.expected_version, "current_version": turn.version},
        )

    previous_status = turn.status
    previous_stage_id = turn.stage_id
    previous_vendor_id = turn.vendor_id
    previous_flags = {
        "needs_dfo_approval": bool(turn.needs_dfo_approval),
        "needs_ho_approval": bool(turn.needs_ho_approval),
    }

    target = _resolve_target_stage(db=db, turn=turn, changes=changes)
    stage_changed = target is not None

    vendor_id = changes.get("vendor_id", turn.vendor_id)
    if "vendor_id" in changes and vendor_id is not None and vendor_id != previous_vendor_id:
        _ensure_vendor(db=db, vendor_id=vendor_id)
    estimated_cost = changes.get("estimated_cost", turn.estimated_cost)
    actual_cost = changes.get("actual_cost", turn.actual_cost)

    if stage_changed:
        new_status = status_for_stage(target) or previous_status
        checked_stage = target
    else:
        new_status = previous_status
        checked_stage = _current_stage(db=db, turn=turn) if REQUIREMENT_FIELDS & set(changes) else None

    if checked_stage is not None:
        has_lock_box = checked_stage.requires_lock_box and lock_box_is_current(db=db, property_id=turn.property_id)
        ensure_stage_requirements(
            checked_stage,
            vendor_id=vendor_id,
            estimated_cost=estimated_cost,
            has_lock_box=has_lock_box,
        )

    evaluation = evaluate_approval(
        db=db,
        turn_id=turn.id,
        estimated_cost=estimated_cost,
        actual_cost=actual_cost,
    )
    if stage_changed and target.requires_approval and evaluation.state.outstanding:
        raise ApprovalRequired(evaluation.state.outstanding)

    if "actual_cost" in changes or new_status != previous_status:
        ensure_actual_cost_allowed(status=new_status, actual_cost=actual_cost)
    now = now_utc()
    completion_date = resolve_completion_date(
        status=new_status,
        current=turn.completion_date,
        requested=changes.get("completion_date"),
        at=now,
    )

    # All checks passed; nothing below raises a domain error.
    for field, value in changes.items():
        if field not in TRANSITION_FIELDS:
            setattr(turn, field, value)
    if stage_changed:
        turn.stage_id = target.id
        turn.stage_entered_at = now
    turn.status = new_status
    turn.completion_date = completion_date
    flags = evaluation.flags()
    for field, value in flags.items():
        setattr(turn, field, value)
    turn.updated_by = actor.id

    entries = history_recorder.record_transition(
        db,
        turn_id=turn.id,
        previous_status=previous_status,
        new_status=new_status,
        previous_stage_id=previous_stage_id,
        new_stage_id=turn.stage_id,
        actor_id=actor.id,
        comment=data.comment,
        snapshot=history_recorder.snapshot_turn(turn),
    )
    _commit_turn(db, turn_id)
    db.refresh(turn)

    if entries:
        logger.info(
            "turn.transitioned turn=%s status=%s->%s stage_changed=%s actor=%s",
            turn.id, previous_status, new_status, stage_changed, actor.id,
            extra={"turn_id": str(turn.id), "stage_key": target.key if stage_changed else None, "actor_id": str(actor.id)},
        )
    else:
        logger.info(
            "turn.fields_updated turn=%s fields=%s actor=%s",
            turn.id, sorted(changes), actor.id,
            extra={"turn_id": str(turn.id), "actor_id": str(actor.id)},
        )

    for event, payload in events_for_update(
        previous_vendor_id=previous_vendor_id,
        new_vendor_id=turn.vendor_id,
        previous_flags=previous_flags,
        new_flags=flags,
    ):
        enqueue_turn_notification(event, turn, **payload)
    return turn


def delete_turn_use_case(*, db: Session, turn_id: UUID, actor: Actor, reason: str | None = None) -> None:
    """Soft delete: the row and its audit trail stay; the turn disappears from reads."""
    turn = get_turn_or_404(db=db, turn_id=turn_id, for_update=True)
    turn.deleted_at = now_utc()
    turn.deleted_by = actor.id
    turn.updated_by = actor.id
    history_recorder.record(
        db,
        turn_id=turn.id,
        action="deleted",
        actor_id=actor.id,
        previous_value=turn.status,
        new_value=turn.status,
        comment=(reason or "").strip() or f"Deleted turn {turn.turn_number}",
        snapshot=history_recorder.snapshot_turn(turn),
    )
    _commit_turn(db, turn_id)
    logger.info("turn.deleted turn=%s actor=%s", turn.id, actor.id, extra={"turn_id": str(turn.id), "actor_id": str(actor.id)})
