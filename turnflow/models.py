"""SQLAlchemy models for turns, stages, approvals and the audit ledgers."""
from sqlalchemy import (
    Boolean, Column, String, Integer, Date, DateTime, Text, Numeric,
    ForeignKey, CheckConstraint, Index, event
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from .database import Base


TURN_STATUSES: tuple[str, ...] = (
    "draft",
    "secure_property",
    "inspection",
    "scope_review",
    "vendor_assigned",
    "in_progress",
    "change_order",
    "complete",
    "scan_360",
)
TURN_PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")
APPROVAL_TIERS: tuple[str, ...] = ("dfo", "ho")
APPROVAL_DECISIONS: tuple[str, ...] = ("approved", "rejected", "pending")
LOCK_BOX_LOCATIONS: tuple[str, ...] = ("front", "back", "left", "right", "other")
TURN_HISTORY_ACTIONS: tuple[str, ...] = (
    "created",
    "status_change",
    "stage_change",
    "approval_decision",
    "deleted",
)


def _in(column, values) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Property(Base):
    """Property directory row; this service only owns the lock box fields."""
    __tablename__ = "properties"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=False)
    is_active = Column(Boolean, default=True)

    # Current lock box state. History lives in lock_box_history.
    lock_box_code = Column(String(50), nullable=True)
    lock_box_location = Column(String(20), nullable=True)
    lock_box_install_date = Column(Date, nullable=True)
    lock_box_notes = Column(Text, nullable=True)
    # Optimistic concurrency counter, bumped on every property write.
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            _in("lock_box_location", LOCK_BOX_LOCATIONS) + " OR lock_box_location IS NULL",
            name="chk_property_lock_box_location",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    turns = relationship("Turn", back_populates="property")


class Vendor(Base):
    """Vendor directory row (read-only for this service)."""
    __tablename__ = "vendors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    is_approved = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TurnStage(Base):
    """Configurable workflow stage with data-driven requirement flags."""
    __tablename__ = "turn_stages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), unique=True, nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    description = Column(String(500), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_final = Column(Boolean, nullable=False, default=False)

    requires_approval = Column(Boolean, nullable=False, default=False)
    requires_vendor = Column(Boolean, nullable=False, default=False)
    requires_amount = Column(Boolean, nullable=False, default=False)
    requires_lock_box = Column(Boolean, nullable=False, default=False)

    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # At most one default stage.
        Index(
            "uq_turn_stages_single_default",
            "is_default",
            unique=True,
            postgresql_where=(is_default == True),  # noqa: E712
        ),
    )


class Turn(Base):
    """A unit of renovation work on one property, moved through the stage workflow."""
    __tablename__ = "turns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    turn_number = Column(String(50), unique=True, nullable=False, index=True)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False, index=True)
    status = Column(String(30), nullable=False, default="draft", index=True)
    priority = Column(String(20), nullable=False, default="medium")
    stage_id = Column(UUID(as_uuid=True), ForeignKey("turn_stages.id"), nullable=True, index=True)
    stage_entered_at = Column(DateTime(timezone=True), nullable=True)
    vendor_id = Column(UUID(as_uuid=True), ForeignKey("vendors.id"), nullable=True, index=True)

    # Costs
    estimated_cost = Column(Numeric(12, 2), nullable=True)
    actual_cost = Column(Numeric(12, 2), nullable=True)

    # Dates
    move_out_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True, index=True)
    completion_date = Column(DateTime(timezone=True), nullable=True)

    scope_of_work = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Utilities readiness
    power_status = Column(Boolean, nullable=True)
    water_status = Column(Boolean, nullable=True)
    gas_status = Column(Boolean, nullable=True)

    # Work flags
    trash_out_needed = Column(Boolean, nullable=False, default=False)
    appliances_needed = Column(Boolean, nullable=False, default=False)

    # Approval cache, recomputed from turn_approvals on every decision/turn write.
    needs_dfo_approval = Column(Boolean, nullable=False, default=False)
    needs_ho_approval = Column(Boolean, nullable=False, default=False)
    dfo_approved_by = Column(UUID(as_uuid=True), nullable=True)
    dfo_approved_at = Column(DateTime(timezone=True), nullable=True)
    ho_approved_by = Column(UUID(as_uuid=True), nullable=True)
    ho_approved_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    # Soft delete only; history must survive.
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    deleted_by = Column(UUID(as_uuid=True), nullable=True)

    __table_args__ = (
        CheckConstraint(_in("status", TURN_STATUSES), name="chk_turn_status"),
        CheckConstraint(_in("priority", TURN_PRIORITIES), name="chk_turn_priority"),
        CheckConstraint(
            "(status = 'complete') = (completion_date IS NOT NULL)",
            name="chk_turn_completion_date_iff_complete",
        ),
        CheckConstraint("estimated_cost IS NULL OR estimated_cost >= 0", name="chk_turn_estimated_cost"),
        CheckConstraint("actual_cost IS NULL OR actual_cost >= 0", name="chk_turn_actual_cost"),
    )
    __mapper_args__ = {"version_id_col": version}

    property = relationship("Property", back_populates="turns")
    stage = relationship("TurnStage")
    vendor = relationship("Vendor")
    approvals = relationship("TurnApproval", back_populates="turn", order_by="TurnApproval.decided_at")
    history = relationship("TurnHistory", back_populates="turn", order_by="TurnHistory.created_at")


class ApprovalThreshold(Base):
    """Monetary band [min_amount, max_amount) mapped to an approval tier."""
    __tablename__ = "approval_thresholds"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    min_amount = Column(Numeric(12, 2), nullable=False)
    max_amount = Column(Numeric(12, 2), nullable=True)  # NULL = unbounded
    approval_type = Column(String(10), nullable=False, index=True)
    requires_sequential = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(_in("approval_type", APPROVAL_TIERS), name="chk_threshold_approval_type"),
        CheckConstraint("min_amount >= 0", name="chk_threshold_min_non_negative"),
        CheckConstraint("max_amount IS NULL OR max_amount > min_amount", name="chk_threshold_band"),
    )


class TurnApproval(Base):
    """One approver's decision on one tier of a turn. Insert-only."""
    __tablename__ = "turn_approvals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    turn_id = Column(UUID(as_uuid=True), ForeignKey("turns.id"), nullable=False, index=True)
    approver_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    approver_role = Column(String(50), nullable=False)
    tier = Column(String(10), nullable=False)
    decision = Column(String(20), nullable=False)
    comment = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)  # amount the decision was made against
    is_override = Column(Boolean, nullable=False, default=False)
    decided_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(_in("tier", APPROVAL_TIERS), name="chk_turn_approval_tier"),
        CheckConstraint(_in("decision", APPROVAL_DECISIONS), name="chk_turn_approval_decision"),
        Index("idx_turn_approvals_turn_tier", "turn_id", "tier", "decided_at"),
    )

    turn = relationship("Turn", back_populates="approvals")


class TurnHistory(Base):
    """Append-only audit row for a turn mutation."""
    __tablename__ = "turn_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    turn_id = Column(UUID(as_uuid=True), ForeignKey("turns.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    previous_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=True)
    previous_stage_id = Column(UUID(as_uuid=True), nullable=True)
    new_stage_id = Column(UUID(as_uuid=True), nullable=True)
    changed_by = Column(UUID(as_uuid=True), nullable=True, index=True)
    comment = Column(Text, nullable=True)
    changed_data = Column(JSONB, default={})
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        CheckConstraint(_in("action", TURN_HISTORY_ACTIONS), name="chk_turn_history_action"),
        Index("idx_turn_history_turn_created", "turn_id", "created_at"),
    )

    turn = relationship("Turn", back_populates="history")


class LockBoxHistory(Base):
    """Append-only record of a lock box change on a property."""
    __tablename__ = "lock_box_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False, index=True)
    turn_id = Column(UUID(as_uuid=True), ForeignKey("turns.id"), nullable=True, index=True)
    lock_box_install_date = Column(Date, nullable=True)
    lock_box_location = Column(String(20), nullable=True)
    old_lock_box_code = Column(String(50), nullable=True)
    new_lock_box_code = Column(String(50), nullable=True)
    changed_fields = Column(JSONB, default=[])
    change_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    changed_by = Column(UUID(as_uuid=True), nullable=True, index=True)
    reason = Column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint("length(btrim(reason)) > 0", name="chk_lock_box_history_reason"),
        Index("idx_lock_box_history_property_date", "property_id", "change_date"),
    )


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to update or delete an audit row."""


APPEND_ONLY_MODELS = (TurnApproval, TurnHistory, LockBoxHistory)


def _reject_update(_mapper, _connection, target) -> None:
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only and cannot be updated")


def _reject_delete(_mapper, _connection, target) -> None:
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only and cannot be deleted")


for _model in APPEND_ONLY_MODELS:
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)
