"""Lock box ledger use-cases: current access-code state per property and its forensic trail."""
from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import Actor
from ..config import settings
from ..domain_errors import Conflict, NotFound, ValidationError
from ..models import LockBoxHistory, Property, Turn
from ..schemas import LockBoxUpdate
from ..services.lockbox_rules import diff_lock_box, ensure_lock_box_changed, ensure_reason, has_current_code
from ..services.stage_rules import now_utc

logger = logging.getLogger(__name__)


def _get_property_or_404(*, db: Session, property_id: UUID, for_update: bool = False) -> Property:
    query = db.query(Property).filter(Property.id == property_id)
    if for_update:
        query = query.with_for_update()
    prop = query.first()
    if not prop:
        raise NotFound(
            code="PROPERTY_NOT_FOUND",
            message="Property not found",
            details={"property_id": str(property_id)},
        )
    return prop


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return settings.LOCKBOX_HISTORY_DEFAULT_LIMIT
    return max(1, min(int(limit), settings.LOCKBOX_HISTORY_MAX_LIMIT))


def lock_box_snapshot(prop: Property) -> dict[str, Any]:
    return {
        "property_id": prop.id,
        "code": prop.lock_box_code,
        "location": prop.lock_box_location,
        "install_date": prop.lock_box_install_date,
        "notes": prop.lock_box_notes,
        "version": prop.version,
    }


def get_lock_box_use_case(*, db: Session, property_id: UUID) -> Property:
    return _get_property_or_404(db=db, property_id=property_id)


def lock_box_is_current(*, db: Session, property_id: UUID) -> bool:
    """Whether the property holds a usable access code right now."""
    return has_current_code(_get_property_or_404(db=db, property_id=property_id))


def update_lock_box_use_case(*, db: Session, property_id: UUID, data: LockBoxUpdate, actor: Actor) -> Property:
    """Change lock box fields and append the matching ledger entry in one transaction."""
    reason = ensure_reason(data.reason)
    prop = _get_property_or_404(db=db, property_id=property_id, for_update=True)

    if data.expected_version is not None and data.expected_version != prop.version:
        raise Conflict(
            code="LOCKBOX_VERSION_CONFLICT",
            message="Lock box was changed since it was read; reload and retry",
            details={"expected_version": data.expected_version, "current_version": prop.version},
        )

    change = diff_lock_box(prop, data.requested_fields())
    ensure_lock_box_changed(change)

    if data.turn_id is not None:
        turn = db.query(Turn).filter(Turn.id == data.turn_id).first()
        if not turn or turn.property_id != prop.id:
            raise ValidationError(
                code="LOCKBOX_TURN_MISMATCH",
                message="Turn does not belong to this property",
                details={"turn_id": str(data.turn_id)},
            )

    old_code = prop.lock_box_code
    for column, (_, new) in change.changed.items():
        setattr(prop, column, new)

    db.add(
        LockBoxHistory(
            property_id=prop.id,
            turn_id=data.turn_id,
            lock_box_install_date=prop.lock_box_install_date,
            lock_box_location=prop.lock_box_location,
            old_lock_box_code=old_code,
            new_lock_box_code=prop.lock_box_code,
            changed_fields=change.changed_fields,
            change_date=now_utc(),
            changed_by=actor.id,
            reason=reason,
        )
    )
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise Conflict(
            code="LOCKBOX_VERSION_CONFLICT",
            message="Lock box was changed concurrently; reload and retry",
            details={"property_id": str(property_id)},
        )
    db.refresh(prop)

    # Field names only; codes stay in the ledger.
    logger.info(
        "lockbox.updated property=%s fields=%s actor=%s",
        prop.id, ",".join(change.changed_fields), actor.id,
        extra={"property_id": str(prop.id), "actor_id": str(actor.id), "changed_fields": change.changed_fields},
    )
    return prop


def get_lock_box_history_use_case(*, db: Session, property_id: UUID, limit: int | None = None) -> list[LockBoxHistory]:
    """Ledger entries for one property, newest first."""
    prop = _get_property_or_404(db=db, property_id=property_id)
    return db.query(LockBoxHistory).filter(
        LockBoxHistory.property_id == prop.id,
    ).order_by(
        LockBoxHistory.change_date.desc(),
        LockBoxHistory.id.desc(),
    ).limit(_clamp_limit(limit)).all()


def list_lock_box_changes_use_case(*, db: Session, limit: int | None = None, offset: int = 0) -> list[LockBoxHistory]:
    """Cross-property change feed, newest first."""
    return db.query(LockBoxHistory).order_by(
        LockBoxHistory.change_date.desc(),
        LockBoxHistory.id.desc(),
    ).offset(max(0, offset)).limit(_clamp_limit(limit)).all()
