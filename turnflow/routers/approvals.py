"""Turn approval endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Actor, PermissionChecker, get_current_actor
from ..database import get_db
from ..schemas import ApprovalDecisionCreate, ApprovalDecisionResponse, ApprovalStateResponse
from ..use_cases.approval_workflow import (
    approval_state_payload,
    get_approval_state_use_case,
    list_decisions_use_case,
    submit_decision_use_case,
)

router = APIRouter(prefix="/turns", tags=["approvals"])


@router.get("/{turn_id}/approvals", response_model=ApprovalStateResponse)
def get_approval_state(
    turn_id: UUID,
    actor: Actor = Depends(PermissionChecker("canViewTurns")),
    db: Session = Depends(get_db),
):
    """Aggregate approval state, recomputed from the decision records."""
    turn, evaluation = get_approval_state_use_case(db=db, turn_id=turn_id)
    return approval_state_payload(turn, evaluation)


@router.get("/{turn_id}/approvals/decisions", response_model=list[ApprovalDecisionResponse])
def list_decisions(
    turn_id: UUID,
    actor: Actor = Depends(PermissionChecker("canViewTurnHistory")),
    db: Session = Depends(get_db),
):
    """All decision records for the turn, oldest first."""
    return list_decisions_use_case(db=db, turn_id=turn_id)


@router.post("/{turn_id}/approvals", response_model=ApprovalStateResponse)
def submit_decision(
    turn_id: UUID,
    data: ApprovalDecisionCreate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Approve or reject one tier. Role eligibility is checked per tier."""
    turn, evaluation = submit_decision_use_case(db=db, turn_id=turn_id, data=data, actor=actor)
    return approval_state_payload(turn, evaluation)
