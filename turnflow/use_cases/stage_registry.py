"""Stage registry use-cases: the configurable, ordered workflow stage set."""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import Actor
from ..config import settings
from ..domain_errors import Conflict, NotFound
from ..models import Turn, TurnStage
from ..schemas import StageCreate, StageUpdate
from ..services.stage_cache import StageCache, StageSnapshot
from ..services.stage_rules import order_stages

logger = logging.getLogger(__name__)

stage_cache = StageCache(ttl_seconds=settings.STAGE_CACHE_TTL_SECONDS)


def _load_active_stages(db: Session) -> list[TurnStage]:
    rows = db.query(TurnStage).filter(TurnStage.is_active == True).all()  # noqa: E712
    return order_stages(rows)


def _get_stage_by_key(*, db: Session, key: str) -> TurnStage:
    stage = db.query(TurnStage).filter(TurnStage.key == key).first()
    if not stage:
        raise NotFound(
            code="STAGE_NOT_FOUND",
            message=f"Stage '{key}' not found",
            details={"key": key},
        )
    return stage


def _ensure_unique(*, db: Session, key: str | None, name: str | None, exclude_id: UUID | None = None) -> None:
    clauses = []
    if key is not None:
        clauses.append(TurnStage.key == key)
    if name is not None:
        clauses.append(TurnStage.name == name)
    if not clauses:
        return
    query = db.query(TurnStage).filter(or_(*clauses))
    if exclude_id is not None:
        query = query.filter(TurnStage.id != exclude_id)
    existing = query.first()
    if existing:
        field = "key" if key is not None and existing.key == key else "name"
        raise Conflict(
            code="STAGE_DUPLICATE_KEY",
            message=f"A stage with this {field} already exists",
            details={"field": field, "key": existing.key},
        )


def _commit_stage(db: Session, key: str) -> None:
    """Commit a stage write; a concurrent insert of the same key or name loses here."""
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(
            code="STAGE_DUPLICATE_KEY",
            message="A stage with this key or name already exists",
            details={"key": key},
        )


def _clear_other_defaults(*, db: Session, stage_id: UUID | None) -> None:
    query = db.query(TurnStage).filter(TurnStage.is_default == True)  # noqa: E712
    if stage_id is not None:
        query = query.filter(TurnStage.id != stage_id)
    query.update({TurnStage.is_default: False}, synchronize_session=False)
    db.flush()


def list_active_stages_use_case(*, db: Session) -> list[StageSnapshot]:
    """Active stages ordered by sequence (served from the stage cache)."""
    return stage_cache.get(lambda: _load_active_stages(db))


def get_stage_use_case(*, db: Session, key: str) -> TurnStage:
    stage = _get_stage_by_key(db=db, key=key)
    if not stage.is_active:
        raise NotFound(
            code="STAGE_NOT_FOUND",
            message=f"Stage '{key}' is not active",
            details={"key": key},
        )
    return stage


def get_default_stage(*, db: Session) -> TurnStage | None:
    return db.query(TurnStage).filter(
        TurnStage.is_default == True,  # noqa: E712
        TurnStage.is_active == True,  # noqa: E712
    ).first()


def create_stage_use_case(*, db: Session, data: StageCreate, actor: Actor) -> TurnStage:
    _ensure_unique(db=db, key=data.key, name=data.name)
    if data.is_default and not data.is_active:
        raise Conflict(
            code="STAGE_DEFAULT_INACTIVE",
            message="The default stage must be active",
            details={"key": data.key},
        )
    if data.is_default:
        _clear_other_defaults(db=db, stage_id=None)

    stage = TurnStage(**data.model_dump(), created_by=actor.id, updated_by=actor.id)
    db.add(stage)
    _commit_stage(db, stage.key)
    db.refresh(stage)
    stage_cache.invalidate()
    logger.info("stage.created key=%s actor=%s", stage.key, actor.id, extra={"stage_key": stage.key, "actor_id": str(actor.id)})
    return stage


def update_stage_use_case(*, db: Session, key: str, data: StageUpdate, actor: Actor) -> TurnStage:
    stage = _get_stage_by_key(db=db, key=key)
    patch = data.model_dump(exclude_unset=True)

    if stage.is_default and patch.get("is_default") is False:
        raise Conflict(
            code="STAGE_DEFAULT_REQUIRED",
            message="Cannot remove the default flag from the only default stage; mark another stage default instead",
            details={"key": key},
        )
    if patch.get("is_default", stage.is_default) and not patch.get("is_active", stage.is_active):
        raise Conflict(
            code="STAGE_DEFAULT_INACTIVE",
            message="The default stage must be active",
            details={"key": key},
        )
    if "name" in patch and patch["name"] != stage.name:
        _ensure_unique(db=db, key=None, name=patch["name"], exclude_id=stage.id)

    if patch.get("is_default") and not stage.is_default:
        _clear_other_defaults(db=db, stage_id=stage.id)

    for field, value in patch.items():
        setattr(stage, field, value)
    stage.updated_by = actor.id

    _commit_stage(db, key)
    db.refresh(stage)
    stage_cache.invalidate()
    logger.info(
        "stage.updated key=%s fields=%s actor=%s",
        key, sorted(patch), actor.id,
        extra={"stage_key": key, "actor_id": str(actor.id)},
    )
    return stage


def delete_stage_use_case(*, db: Session, key: str, actor: Actor) -> None:
    stage = _get_stage_by_key(db=db, key=key)

    if stage.is_default or stage.is_final:
        raise Conflict(
            code="STAGE_PROTECTED",
            message="Default and final stages cannot be deleted",
            details={"key": key, "is_default": bool(stage.is_default), "is_final": bool(stage.is_final)},
        )

    turn_count = db.query(Turn).filter(Turn.stage_id == stage.id).count()
    if turn_count:
        raise Conflict(
            code="STAGE_IN_USE",
            message=f"Stage is referenced by {turn_count} turn(s); deactivate it instead",
            details={"key": key, "turns": turn_count},
        )

    db.delete(stage)
    db.commit()
    stage_cache.invalidate()
    logger.info("stage.deleted key=%s actor=%s", key, actor.id, extra={"stage_key": key, "actor_id": str(actor.id)})
