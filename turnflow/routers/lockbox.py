"""Property lock box endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Actor, PermissionChecker
from ..database import get_db
from ..schemas import LockBoxHistoryResponse, LockBoxSnapshot, LockBoxUpdate
from ..use_cases.lockbox_ledger import (
    get_lock_box_history_use_case,
    get_lock_box_use_case,
    list_lock_box_changes_use_case,
    lock_box_snapshot,
    update_lock_box_use_case,
)

router = APIRouter(prefix="/properties", tags=["lock-box"])


@router.get("/lock-box-changes", response_model=list[LockBoxHistoryResponse])
def list_lock_box_changes(
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(PermissionChecker("canViewLockBoxHistory")),
    db: Session = Depends(get_db),
):
    """Recent lock box changes across all properties, newest first."""
    return list_lock_box_changes_use_case(db=db, limit=limit, offset=offset)


@router.get("/{property_id}/lock-box", response_model=LockBoxSnapshot)
def get_lock_box(
    property_id: UUID,
    actor: Actor = Depends(PermissionChecker("canManageLockBoxes")),
    db: Session = Depends(get_db),
):
    return lock_box_snapshot(get_lock_box_use_case(db=db, property_id=property_id))


@router.put("/{property_id}/lock-box", response_model=LockBoxSnapshot)
def update_lock_box(
    property_id: UUID,
    data: LockBoxUpdate,
    actor: Actor = Depends(PermissionChecker("canManageLockBoxes")),
    db: Session = Depends(get_db),
):
    """Change the lock box; a reason is mandatory and the change is ledgered."""
    prop = update_lock_box_use_case(db=db, property_id=property_id, data=data, actor=actor)
    return lock_box_snapshot(prop)


@router.get("/{property_id}/lock-box/history", response_model=list[LockBoxHistoryResponse])
def get_lock_box_history(
    property_id: UUID,
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(PermissionChecker("canViewLockBoxHistory")),
    db: Session = Depends(get_db),
):
    """Lock box ledger for one property, newest first."""
    return get_lock_box_history_use_case(db=db, property_id=property_id, limit=limit)
