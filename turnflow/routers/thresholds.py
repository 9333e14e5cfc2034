"""Approval threshold endpoints."""
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Actor, PermissionChecker
from ..database import get_db
from ..schemas import ThresholdCreate, ThresholdResponse, ThresholdUpdate, TierResolutionsResponse
from ..use_cases.approval_workflow import (
    create_threshold_use_case,
    deactivate_threshold_use_case,
    list_thresholds_use_case,
    resolve_tiers_use_case,
    update_threshold_use_case,
)

router = APIRouter(prefix="/approval-thresholds", tags=["approval-thresholds"])


@router.get("", response_model=list[ThresholdResponse])
def list_thresholds(
    include_inactive: bool = False,
    actor: Actor = Depends(PermissionChecker("canViewTurns")),
    db: Session = Depends(get_db),
):
    """List approval bands ordered by tier and lower bound."""
    return list_thresholds_use_case(db=db, include_inactive=include_inactive)


@router.get("/resolve", response_model=TierResolutionsResponse)
def resolve_tiers(
    amount: Decimal = Query(..., ge=0),
    actor: Actor = Depends(PermissionChecker("canViewTurns")),
    db: Session = Depends(get_db),
):
    """Which tiers an amount falls into."""
    resolutions, required = resolve_tiers_use_case(db=db, amount=amount)
    return {"amount": amount, "tiers": resolutions, "required_tiers": required}


@router.post("", response_model=ThresholdResponse, status_code=201)
def create_threshold(
    data: ThresholdCreate,
    actor: Actor = Depends(PermissionChecker("canManageThresholds")),
    db: Session = Depends(get_db),
):
    return create_threshold_use_case(db=db, data=data, actor=actor)


@router.patch("/{threshold_id}", response_model=ThresholdResponse)
def update_threshold(
    threshold_id: UUID,
    data: ThresholdUpdate,
    actor: Actor = Depends(PermissionChecker("canManageThresholds")),
    db: Session = Depends(get_db),
):
    return update_threshold_use_case(db=db, threshold_id=threshold_id, data=data, actor=actor)


@router.delete("/{threshold_id}", response_model=ThresholdResponse)
def deactivate_threshold(
    threshold_id: UUID,
    actor: Actor = Depends(PermissionChecker("canManageThresholds")),
    db: Session = Depends(get_db),
):
    """Deactivate a band. Bands are never hard-deleted."""
    return deactivate_threshold_use_case(db=db, threshold_id=threshold_id, actor=actor)
