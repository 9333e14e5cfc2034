"""Approval workflow use-cases: threshold administration, decisions and aggregate state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import TIER_APPROVER_ROLES, Actor, can_decide_tier
from ..domain_errors import AlreadyDecided, Conflict, Forbidden, NotFound, ValidationError
from ..models import APPROVAL_TIERS, ApprovalThreshold, Turn, TurnApproval
from ..schemas import ApprovalDecisionCreate, ThresholdCreate, ThresholdUpdate
from ..services import history_recorder
from ..services.approval_rules import (
    ApprovalState,
    TierResolution,
    approval_amount,
    approval_flags,
    derive_approval_state,
    ensure_sequence,
    required_tiers,
    resolve_tiers,
    sequential_tiers,
    tier_is_sequential,
)
from ..services.notifications import enqueue_turn_notification, events_for_update
from ..services.stage_rules import now_utc

logger = logging.getLogger(__name__)

DECIDABLE = ("approved", "rejected")


@dataclass(frozen=True)
class ApprovalEvaluation:
    """Approval picture of one turn at one amount, recomputed from stored decisions."""

    amount: Decimal | None
    resolutions: list[TierResolution]
    required: list[str]
    sequential: list[str]
    state: ApprovalState
    decisions: list[Any]
    thresholds: list[Any]

    def flags(self) -> dict[str, Any]:
        return approval_flags(self.state, sequential_tiers=self.sequential)


def get_turn_or_404(*, db: Session, turn_id: UUID, for_update: bool = False, include_deleted: bool = False) -> Turn:
    query = db.query(Turn).filter(Turn.id == turn_id)
    if not include_deleted:
        query = query.filter(Turn.deleted_at.is_(None))
    if for_update:
        query = query.with_for_update()
    turn = query.first()
    if not turn:
        raise NotFound(
            code="TURN_NOT_FOUND",
            message="Turn not found",
            details={"turn_id": str(turn_id)},
        )
    return turn


def _active_thresholds(db: Session) -> list[ApprovalThreshold]:
    return db.query(ApprovalThreshold).filter(ApprovalThreshold.is_active == True).all()  # noqa: E712


def _turn_decisions(db: Session, turn_id: UUID) -> list[TurnApproval]:
    return db.query(TurnApproval).filter(
        TurnApproval.turn_id == turn_id,
    ).order_by(TurnApproval.decided_at).all()


def evaluate_approval(
    *,
    db: Session,
    turn_id: UUID,
    estimated_cost: Decimal | None,
    actual_cost: Decimal | None,
    decisions: list[Any] | None = None,
    thresholds: list[Any] | None = None,
) -> ApprovalEvaluation:
    """Resolve required tiers for the turn's amount and derive state from its decisions."""
    if thresholds is None:
        thresholds = _active_thresholds(db)
    if decisions is None:
        decisions = _turn_decisions(db, turn_id)

    amount = approval_amount(estimated_cost=estimated_cost, actual_cost=actual_cost)
    resolutions = resolve_tiers(thresholds, amount)
    required = required_tiers(resolutions)
    return ApprovalEvaluation(
        amount=amount,
        resolutions=resolutions,
        required=required,
        sequential=sequential_tiers(resolutions),
        state=derive_approval_state(required, decisions),
        decisions=list(decisions),
        thresholds=list(thresholds),
    )


def approval_state_payload(turn: Turn, evaluation: ApprovalEvaluation) -> dict[str, Any]:
    flags = evaluation.flags()
    state = evaluation.state
    return {
        "turn_id": turn.id,
        "status": state.status,
        "amount": evaluation.amount,
        "required_tiers": state.required_tiers,
        "tiers": state.tiers,
        "outstanding": state.outstanding,
        "rejected_tiers": state.rejected_tiers,
        "rejection_reason": state.rejection_reason,
        "eligible_to_advance": state.eligible_to_advance,
        "needs_dfo_approval": flags["needs_dfo_approval"],
        "needs_ho_approval": flags["needs_ho_approval"],
    }


def get_approval_state_use_case(*, db: Session, turn_id: UUID) -> tuple[Turn, ApprovalEvaluation]:
    turn = get_turn_or_404(db=db, turn_id=turn_id)
    evaluation = evaluate_approval(
        db=db,
        turn_id=turn.id,
        estimated_cost=turn.estimated_cost,
        actual_cost=turn.actual_cost,
    )
    return turn, evaluation


def list_decisions_use_case(*, db: Session, turn_id: UUID) -> list[TurnApproval]:
    turn = get_turn_or_404(db=db, turn_id=turn_id, include_deleted=True)
    return _turn_decisions(db, turn.id)


def submit_decision_use_case(
    *,
    db: Session,
    turn_id: UUID,
    data: ApprovalDecisionCreate,
    actor: Actor,
) -> tuple[Turn, ApprovalEvaluation]:
    """Record one approver decision and refresh the turn's approval cache columns."""
    tier = data.tier
    decision = data.decision
    if tier not in APPROVAL_TIERS:
        raise ValidationError(
            code="APPROVAL_TIER_INVALID",
            message=f"Unknown approval tier '{tier}'",
            details={"tier": tier, "allowed": list(APPROVAL_TIERS)},
        )
    if decision not in DECIDABLE:
        raise ValidationError(
            code="APPROVAL_DECISION_INVALID",
            message="Decision must be 'approved' or 'rejected'",
            details={"decision": decision},
        )
    comment = (data.comment or "").strip() or None
    if decision == "rejected" and not comment:
        raise ValidationError(
            code="APPROVAL_REJECTION_COMMENT_REQUIRED",
            message="A rejection must explain its reason in the comment",
            details={"tier": tier},
        )

    turn = get_turn_or_404(db=db, turn_id=turn_id, for_update=True)

    if not can_decide_tier(actor, tier):
        raise Forbidden(
            code="APPROVAL_ROLE_FORBIDDEN",
            message=f"Role '{actor.role}' cannot decide the '{tier}' tier",
            details={"tier": tier, "role": actor.role, "allowed": sorted(TIER_APPROVER_ROLES[tier])},
        )

    before = evaluate_approval(
        db=db,
        turn_id=turn.id,
        estimated_cost=turn.estimated_cost,
        actual_cost=turn.actual_cost,
    )
    ensure_sequence(
        tier=tier,
        sequential=tier_is_sequential(before.thresholds, tier),
        decisions=before.decisions,
    )

    if tier not in before.required:
        raise ValidationError(
            code="APPROVAL_TIER_NOT_REQUIRED",
            message=f"Tier '{tier}' is not required for this turn's amount",
            details={
                "tier": tier,
                "required": before.required,
                "amount": str(before.amount) if before.amount is not None else None,
            },
        )

    own = [item for item in before.decisions if item.tier == tier and item.approver_id == actor.id]
    if own and not data.override:
        raise AlreadyDecided(
            code="APPROVAL_ALREADY_DECIDED",
            message=f"You already decided the '{tier}' tier for this turn; resubmit as an override to correct it",
            details={"tier": tier, "decision": own[-1].decision},
        )

    previous_flags = {
        "needs_dfo_approval": bool(turn.needs_dfo_approval),
        "needs_ho_approval": bool(turn.needs_ho_approval),
    }

    record = TurnApproval(
        turn_id=turn.id,
        approver_id=actor.id,
        approver_role=actor.role,
        tier=tier,
        decision=decision,
        comment=comment,
        amount=before.amount,
        is_override=bool(own) and data.override,
        decided_at=now_utc(),
    )
    db.add(record)
    db.flush()

    after = evaluate_approval(
        db=db,
        turn_id=turn.id,
        estimated_cost=turn.estimated_cost,
        actual_cost=turn.actual_cost,
        decisions=[*before.decisions, record],
        thresholds=before.thresholds,
    )
    flags = after.flags()
    for field, value in flags.items():
        setattr(turn, field, value)
    turn.updated_by = actor.id

    snapshot = history_recorder.snapshot_turn(turn)
    snapshot["approval"] = {
        "tier": tier,
        "decision": decision,
        "override": record.is_override,
        "amount": before.amount,
        "status": after.state.status,
    }
    history_recorder.record(
        db,
        turn_id=turn.id,
        action="approval_decision",
        actor_id=actor.id,
        comment=comment or f"{tier.upper()} {decision}",
        snapshot=snapshot,
    )

    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise Conflict(
            code="TURN_VERSION_CONFLICT",
            message="Turn was modified concurrently; reload and retry",
            details={"turn_id": str(turn_id)},
        )
    db.refresh(turn)

    logger.info(
        "approval.decided turn=%s tier=%s decision=%s override=%s status=%s actor=%s",
        turn.id, tier, decision, record.is_override, after.state.status, actor.id,
        extra={"turn_id": str(turn.id), "tier": tier, "actor_id": str(actor.id)},
    )

    enqueue_turn_notification(
        "approval_decision",
        turn,
        tier=tier,
        decision=decision,
        approver_id=actor.id,
        approval_status=after.state.status,
        comment=comment,
    )
    for event, payload in events_for_update(
        previous_vendor_id=turn.vendor_id,
        new_vendor_id=turn.vendor_id,
        previous_flags=previous_flags,
        new_flags=flags,
    ):
        enqueue_turn_notification(event, turn, **payload)

    return turn, after


# Threshold administration

def _get_threshold_or_404(*, db: Session, threshold_id: UUID) -> ApprovalThreshold:
    threshold = db.query(ApprovalThreshold).filter(ApprovalThreshold.id == threshold_id).first()
    if not threshold:
        raise NotFound(
            code="THRESHOLD_NOT_FOUND",
            message="Approval threshold not found",
            details={"threshold_id": str(threshold_id)},
        )
    return threshold


def _ensure_band(min_amount: Decimal, max_amount: Decimal | None) -> None:
    if max_amount is not None and Decimal(max_amount) <= Decimal(min_amount):
        raise ValidationError(
            code="THRESHOLD_INVALID_BAND",
            message="max_amount must be greater than min_amount",
            details={"min_amount": str(min_amount), "max_amount": str(max_amount)},
        )


def list_thresholds_use_case(*, db: Session, include_inactive: bool = False) -> list[ApprovalThreshold]:
    query = db.query(ApprovalThreshold)
    if not include_inactive:
        query = query.filter(ApprovalThreshold.is_active == True)  # noqa: E712
    return query.order_by(ApprovalThreshold.approval_type, ApprovalThreshold.min_amount).all()


def create_threshold_use_case(*, db: Session, data: ThresholdCreate, actor: Actor) -> ApprovalThreshold:
    _ensure_band(data.min_amount, data.max_amount)
    threshold = ApprovalThreshold(**data.model_dump())
    db.add(threshold)
    db.commit()
    db.refresh(threshold)
    logger.info(
        "threshold.created tier=%s min=%s max=%s actor=%s",
        threshold.approval_type, threshold.min_amount, threshold.max_amount, actor.id,
    )
    return threshold


def update_threshold_use_case(
    *,
    db: Session,
    threshold_id: UUID,
    data: ThresholdUpdate,
    actor: Actor,
) -> ApprovalThreshold:
    threshold = _get_threshold_or_404(db=db, threshold_id=threshold_id)
    patch = data.model_dump(exclude_unset=True)
    if patch.get("min_amount", threshold.min_amount) is None:
        raise ValidationError(
            code="THRESHOLD_INVALID_BAND",
            message="min_amount is required",
        )
    _ensure_band(patch.get("min_amount", threshold.min_amount), patch.get("max_amount", threshold.max_amount))

    for field, value in patch.items():
        setattr(threshold, field, value)
    db.commit()
    db.refresh(threshold)
    logger.info("threshold.updated id=%s fields=%s actor=%s", threshold.id, sorted(patch), actor.id)
    return threshold


def deactivate_threshold_use_case(*, db: Session, threshold_id: UUID, actor: Actor) -> ApprovalThreshold:
    threshold = _get_threshold_or_404(db=db, threshold_id=threshold_id)
    if threshold.is_active:
        threshold.is_active = False
        db.commit()
        db.refresh(threshold)
        logger.info("threshold.deactivated id=%s actor=%s", threshold.id, actor.id)
    return threshold


def resolve_tiers_use_case(*, db: Session, amount: Decimal) -> tuple[list[TierResolution], list[str]]:
    if amount is None or Decimal(amount) < 0:
        raise ValidationError(
            code="THRESHOLD_INVALID_AMOUNT",
            message="Amount must be zero or greater",
        )
    resolutions = resolve_tiers(_active_thresholds(db), Decimal(amount))
    return resolutions, required_tiers(resolutions)
