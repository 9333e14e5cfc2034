"""Workflow stage endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Actor, PermissionChecker, get_current_actor
from ..database import get_db
from ..schemas import StageCreate, StageResponse, StageUpdate
from ..use_cases.stage_registry import (
    create_stage_use_case,
    delete_stage_use_case,
    get_stage_use_case,
    list_active_stages_use_case,
    update_stage_use_case,
)

router = APIRouter(prefix="/stages", tags=["stages"])


@router.get("", response_model=list[StageResponse])
def list_stages(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Active stages ordered by sequence."""
    return list_active_stages_use_case(db=db)


@router.get("/{key}", response_model=StageResponse)
def get_stage(
    key: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return get_stage_use_case(db=db, key=key)


@router.post("", response_model=StageResponse, status_code=201)
def create_stage(
    data: StageCreate,
    actor: Actor = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    return create_stage_use_case(db=db, data=data, actor=actor)


@router.patch("/{key}", response_model=StageResponse)
def update_stage(
    key: str,
    data: StageUpdate,
    actor: Actor = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    return update_stage_use_case(db=db, key=key, data=data, actor=actor)


@router.delete("/{key}")
def delete_stage(
    key: str,
    actor: Actor = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    """Delete an unused, unprotected stage."""
    delete_stage_use_case(db=db, key=key, actor=actor)
    return {"key": key, "deleted": True}
