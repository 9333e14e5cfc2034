from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from turnflow.domain_errors import ApprovalRequired, Conflict, NotFound, ValidationError
from turnflow.models import ApprovalThreshold, Property, Turn, TurnHistory, TurnStage, Vendor
from turnflow.schemas import ApprovalDecisionCreate, TurnCreate, TurnUpdate
from turnflow.use_cases.approval_workflow import submit_decision_use_case
from turnflow.use_cases.turn_lifecycle import (
    create_turn_use_case,
    delete_turn_use_case,
    get_turn_use_case,
    list_turn_history_use_case,
    update_turn_use_case,
)


def _thresholds():
    return [
        SimpleNamespace(
            id=uuid4(),
            name="DFO approval",
            approval_type="dfo",
            min_amount=Decimal("3000"),
            max_amount=Decimal("10000"),
            requires_sequential=False,
            is_active=True,
        ),
        SimpleNamespace(
            id=uuid4(),
            name="HO approval",
            approval_type="ho",
            min_amount=Decimal("10000"),
            max_amount=None,
            requires_sequential=True,
            is_active=True,
        ),
    ]


def _world(make_session, stage_factory, *, estimated_cost="500", vendor_id=None, lock_box_code="1234"):
    stages = SimpleNamespace(
        draft=stage_factory("draft", sequence=1, is_default=True),
        inspection=stage_factory("inspection", sequence=3),
        vendor_assigned=stage_factory("vendor_assigned", sequence=5, requires_vendor=True),
        in_progress=stage_factory("in_progress", sequence=6, requires_approval=True),
        secured=stage_factory("secure_property", sequence=2, requires_lock_box=True),
        complete=stage_factory("turns_complete", sequence=8, is_final=True),
    )
    prop = SimpleNamespace(id=uuid4(), code="P-100", lock_box_code=lock_box_code, version=1)
    turn = SimpleNamespace(
        id=uuid4(),
        turn_number="TURN-2026-000001",
        property_id=prop.id,
        status="draft",
        priority="medium",
        stage_id=stages.draft.id,
        stage_entered_at=None,
        vendor_id=vendor_id,
        estimated_cost=Decimal(estimated_cost) if estimated_cost is not None else None,
        actual_cost=None,
        completion_date=None,
        notes=None,
        needs_dfo_approval=False,
        needs_ho_approval=False,
        rejection_reason=None,
        version=1,
        deleted_at=None,
        deleted_by=None,
        updated_by=None,
    )
    db = make_session(
        {
            TurnStage: list(vars(stages).values()),
            Property: [prop],
            Turn: [turn],
            ApprovalThreshold: _thresholds(),
        }
    )
    return db, turn, stages, prop


def _history(db):
    return db.added_of(TurnHistory)


def test_small_amount_enters_approval_stage_immediately(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory, estimated_cost="500")

    result = update_turn_use_case(
        db=db,
        turn_id=turn.id,
        data=TurnUpdate(stage_id=stages.in_progress.id),
        actor=actor_factory("property_manager"),
    )

    assert result is turn
    assert turn.status == "in_progress"
    assert turn.stage_id == stages.in_progress.id
    assert turn.stage_entered_at is not None
    assert [entry.action for entry in _history(db)] == ["status_change", "stage_change"]
    assert Turn in db.locked
    assert db.commit_calls == 1


def test_large_amount_requires_both_tiers_then_advances(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory, estimated_cost="12000")
    manager = actor_factory("property_manager")

    with pytest.raises(ApprovalRequired) as exc:
        update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(stage_id=stages.in_progress.id), actor=manager)

    assert exc.value.tiers == ["dfo", "ho"]
    assert exc.value.http_status == 409
    assert turn.status == "draft"
    assert turn.stage_id == stages.draft.id
    assert _history(db) == []
    assert db.commit_calls == 0

    submit_decision_use_case(
        db=db,
        turn_id=turn.id,
        data=ApprovalDecisionCreate(tier="dfo", decision="approved"),
        actor=actor_factory("dfo_approver"),
    )
    assert turn.needs_dfo_approval is False
    assert turn.needs_ho_approval is True

    _, evaluation = submit_decision_use_case(
        db=db,
        turn_id=turn.id,
        data=ApprovalDecisionCreate(tier="ho", decision="approved"),
        actor=actor_factory("ho_approver"),
    )
    assert evaluation.state.status == "approved"
    assert turn.needs_ho_approval is False

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(stage_id=stages.in_progress.id), actor=manager)
    assert turn.status == "in_progress"


def test_vendor_stage_without_vendor_fails_and_leaves_turn_untouched(
    make_session, stage_factory, actor_factory
) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(
            db=db,
            turn_id=turn.id,
            data=TurnUpdate(stage_id=stages.vendor_assigned.id, notes="ready for vendor"),
            actor=actor_factory(),
        )

    assert exc.value.code == "TURN_STAGE_REQUIREMENTS_UNMET"
    assert exc.value.details["missing"] == ["vendor"]
    assert turn.status == "draft"
    assert turn.notes is None
    assert _history(db) == []


def test_vendor_supplied_with_the_transition_satisfies_requirement(
    make_session, stage_factory, actor_factory
) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)
    vendor = SimpleNamespace(id=uuid4(), is_active=True)
    db.rows[Vendor].append(vendor)

    update_turn_use_case(
        db=db,
        turn_id=turn.id,
        data=TurnUpdate(stage_id=stages.vendor_assigned.id, vendor_id=vendor.id),
        actor=actor_factory(),
    )

    assert turn.vendor_id == vendor.id
    assert turn.status == "vendor_assigned"


def test_unknown_vendor_is_not_found(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    with pytest.raises(NotFound) as exc:
        update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(vendor_id=uuid4()), actor=actor_factory())

    assert exc.value.code == "VENDOR_NOT_FOUND"


@pytest.mark.parametrize("lock_box_code", [None, "", "   "])
def test_lock_box_stage_requires_current_code(make_session, stage_factory, actor_factory, lock_box_code) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory, lock_box_code=lock_box_code)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(stage_id=stages.secured.id), actor=actor_factory())

    assert exc.value.details["missing"] == ["lock_box"]


def test_lock_box_stage_entered_with_current_code(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory, lock_box_code="1234")

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(stage_id=stages.secured.id), actor=actor_factory())

    assert turn.status == "secure_property"
    assert turn.stage_id == stages.secured.id


def test_same_status_writes_no_history(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(status="draft"), actor=actor_factory())

    assert turn.status == "draft"
    assert _history(db) == []
    assert db.commit_calls == 1


def test_field_only_update_writes_no_history(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    update_turn_use_case(
        db=db,
        turn_id=turn.id,
        data=TurnUpdate(notes="Carpet in bedroom 2", priority="high"),
        actor=actor_factory(),
    )

    assert turn.notes == "Carpet in bedroom 2"
    assert turn.priority == "high"
    assert _history(db) == []


def test_status_only_patch_moves_to_matching_stage(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(status="inspection"), actor=actor_factory())

    assert turn.stage_id == stages.inspection.id
    entries = _history(db)
    assert [entry.action for entry in entries] == ["status_change", "stage_change"]
    assert (entries[0].previous_status, entries[0].new_status) == ("draft", "inspection")
    assert (entries[1].previous_stage_id, entries[1].new_stage_id) == (stages.draft.id, stages.inspection.id)


def test_history_reads_back_transition_rows_in_write_order(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)
    actor = actor_factory()

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(status="inspection"), actor=actor)
    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(status="draft"), actor=actor)

    history = list_turn_history_use_case(db=db, turn_id=turn.id)

    assert [(entry.action, entry.new_status or entry.new_stage_id) for entry in history] == [
        ("status_change", "inspection"),
        ("stage_change", stages.inspection.id),
        ("status_change", "draft"),
        ("stage_change", stages.draft.id),
    ]


def test_completing_a_turn_sets_completion_date(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(status="complete"), actor=actor_factory())

    assert turn.stage_id == stages.complete.id
    assert turn.status == "complete"
    assert turn.completion_date is not None

    update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(stage_id=stages.inspection.id), actor=actor_factory())
    assert turn.status == "inspection"
    assert turn.completion_date is None


def test_status_and_stage_must_agree(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(
            db=db,
            turn_id=turn.id,
            data=TurnUpdate(stage_id=stages.inspection.id, status="in_progress"),
            actor=actor_factory(),
        )

    assert exc.value.code == "TURN_STATUS_STAGE_MISMATCH"


def test_current_stage_with_other_status_is_a_mismatch(make_session, stage_factory, actor_factory) -> None:
    db, turn, stages, _ = _world(make_session, stage_factory)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(
            db=db,
            turn_id=turn.id,
            data=TurnUpdate(stage_id=stages.draft.id, status="inspection"),
            actor=actor_factory(),
        )

    assert exc.value.code == "TURN_STATUS_STAGE_MISMATCH"
    assert exc.value.details == {"status": "inspection", "stage": "draft", "expected_status": "draft"}
    assert (turn.status, turn.stage_id) == ("draft", stages.draft.id)
    assert _history(db) == []
    assert db.commit_calls == 0

    update_turn_use_case(
        db=db,
        turn_id=turn.id,
        data=TurnUpdate(stage_id=stages.draft.id, status="draft"),
        actor=actor_factory(),
    )
    assert _history(db) == []


def test_actual_cost_rejected_before_work_starts(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(
            db=db,
            turn_id=turn.id,
            data=TurnUpdate(actual_cost=Decimal("450.00")),
            actor=actor_factory(),
        )

    assert exc.value.code == "TURN_ACTUAL_COST_PREMATURE"
    assert turn.actual_cost is None


def test_completion_date_rejected_on_open_turn(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(
            db=db,
            turn_id=turn.id,
            data=TurnUpdate(completion_date=datetime(2026, 6, 1, tzinfo=timezone.utc)),
            actor=actor_factory(),
        )

    assert exc.value.code == "TURN_COMPLETION_DATE_PREMATURE"


def test_required_fields_cannot_be_cleared(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    with pytest.raises(ValidationError) as exc:
        update_turn_use_case(db=db, turn_id=turn.id, data=TurnUpdate(priority=None), actor=actor_factory())

    assert exc.value.code == "TURN_FIELD_REQUIRED"


def test_stale_expected_version_is_a_conflict(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)
    turn.version = 3

    with pytest.raises(Conflict) as exc:
        update_turn_use_case(
            db=db,
            turn_id=turn.id,
            data=TurnUpdate(notes="late edit", expected_version=2),
            actor=actor_factory(),
        )

    assert exc.value.code == "TURN_VERSION_CONFLICT"
    assert turn.notes is None


def test_raising_estimate_flags_first_outstanding_tier(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)

    update_turn_use_case(
        db=db,
        turn_id=turn.id,
        data=TurnUpdate(estimated_cost=Decimal("15000")),
        actor=actor_factory(),
    )

    assert turn.needs_dfo_approval is True
    assert turn.needs_ho_approval is False


def test_unknown_turn_is_not_found(make_session, stage_factory, actor_factory) -> None:
    db, _, _, _ = _world(make_session, stage_factory)

    with pytest.raises(NotFound) as exc:
        update_turn_use_case(db=db, turn_id=uuid4(), data=TurnUpdate(notes="x"), actor=actor_factory())

    assert exc.value.code == "TURN_NOT_FOUND"
    assert exc.value.http_status == 404


def test_create_turn_starts_in_default_stage_with_history(make_session, stage_factory, actor_factory) -> None:
    db, _, stages, prop = _world(make_session, stage_factory)
    actor = actor_factory("property_manager")

    turn = create_turn_use_case(
        db=db,
        data=TurnCreate(property_id=prop.id, estimated_cost=Decimal("5000")),
        actor=actor,
    )

    assert re.fullmatch(r"TURN-\d{4}-\d{6}", turn.turn_number)
    assert turn.status == "draft"
    assert turn.stage_id == stages.draft.id
    assert turn.completion_date is None
    assert turn.needs_dfo_approval is True
    assert turn.created_by == actor.id
    entries = _history(db)
    assert len(entries) == 1
    assert entries[0].action == "created"
    assert entries[0].new_status == "draft"
    assert entries[0].turn_id == turn.id


def test_create_turn_for_unknown_property_is_not_found(make_session, stage_factory, actor_factory) -> None:
    db, _, _, _ = _world(make_session, stage_factory)

    with pytest.raises(NotFound) as exc:
        create_turn_use_case(db=db, data=TurnCreate(property_id=uuid4()), actor=actor_factory())

    assert exc.value.code == "PROPERTY_NOT_FOUND"


def test_delete_is_soft_and_keeps_history_readable(make_session, stage_factory, actor_factory) -> None:
    db, turn, _, _ = _world(make_session, stage_factory)
    actor = actor_factory("admin")

    delete_turn_use_case(db=db, turn_id=turn.id, actor=actor)

    assert turn.deleted_at is not None
    assert turn.deleted_by == actor.id
    assert turn in db.rows[Turn]
    with pytest.raises(NotFound):
        get_turn_use_case(db=db, turn_id=turn.id)

    history = list_turn_history_use_case(db=db, turn_id=turn.id)
    assert [entry.action for entry in history] == ["deleted"]
