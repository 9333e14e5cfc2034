"""Turn endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Actor, PermissionChecker
from ..database import get_db
from ..schemas import TurnCreate, TurnHistoryResponse, TurnResponse, TurnUpdate, TURN_STATUS_PATTERN
from ..use_cases.turn_lifecycle import (
    create_turn_use_case,
    delete_turn_use_case,
    get_turn_use_case,
    list_turn_history_use_case,
    list_turns_use_case,
    update_turn_use_case,
)

router = APIRouter(prefix="/turns", tags=["turns"])


@router.get("", response_model=list[TurnResponse])
def list_turns(
    status: Optional[str] = Query(None, pattern=TURN_STATUS_PATTERN),
    stage_key: Optional[str] = None,
    property_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(PermissionChecker("canViewTurns")),
    db: Session = Depends(get_db),
):
    """List turns (soft-deleted turns excluded)."""
    return list_turns_use_case(
        db=db,
        status=status,
        stage_key=stage_key,
        property_id=property_id,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=TurnResponse, status_code=201)
def create_turn(
    data: TurnCreate,
    actor: Actor = Depends(PermissionChecker("canEditTurns")),
    db: Session = Depends(get_db),
):
    """Open a new turn in the default stage."""
    return create_turn_use_case(db=db, data=data, actor=actor)


@router.get("/{turn_id}", response_model=TurnResponse)
def get_turn(
    turn_id: UUID,
    actor: Actor = Depends(PermissionChecker("canViewTurns")),
    db: Session = Depends(get_db),
):
    """Get turn by ID."""
    return get_turn_use_case(db=db, turn_id=turn_id)


@router.patch("/{turn_id}", response_model=TurnResponse)
def update_turn(
    turn_id: UUID,
    data: TurnUpdate,
    actor: Actor = Depends(PermissionChecker("canEditTurns")),
    db: Session = Depends(get_db),
):
    """Update turn fields, stage or status."""
    return update_turn_use_case(db=db, turn_id=turn_id, data=data, actor=actor)


@router.delete("/{turn_id}")
def delete_turn(
    turn_id: UUID,
    reason: Optional[str] = Query(None, max_length=2000),
    actor: Actor = Depends(PermissionChecker("canDeleteTurns")),
    db: Session = Depends(get_db),
):
    """Soft delete a turn; its history is retained."""
    delete_turn_use_case(db=db, turn_id=turn_id, actor=actor, reason=reason)
    return {"id": str(turn_id), "deleted": True}


@router.get("/{turn_id}/history", response_model=list[TurnHistoryResponse])
def get_turn_history(
    turn_id: UUID,
    actor: Actor = Depends(PermissionChecker("canViewTurnHistory")),
    db: Session = Depends(get_db),
):
    """Get the turn's audit trail, oldest first."""
    return list_turn_history_use_case(db=db, turn_id=turn_id)
