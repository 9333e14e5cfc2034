"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID


TURN_STATUS_PATTERN = "^(draft|secure_property|inspection|scope_review|vendor_assigned|in_progress|change_order|complete|scan_360)$"
PRIORITY_PATTERN = "^(low|medium|high|urgent)$"
TIER_PATTERN = "^(dfo|ho)$"
LOCATION_PATTERN = "^(front|back|left|right|other)$"


# Stage schemas
class StageBase(BaseModel):
    key: str = Field(min_length=1, max_length=50, pattern="^[a-z0-9_]+$")
    name: str = Field(min_length=1, max_length=100)
    sequence: int = Field(default=0, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True
    is_default: bool = False
    is_final: bool = False
    requires_approval: bool = False
    requires_vendor: bool = False
    requires_amount: bool = False
    requires_lock_box: bool = False


class StageCreate(StageBase):
    pass


class StageUpdate(BaseModel):
    """Partial stage patch. The key is immutable."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    sequence: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    is_final: Optional[bool] = None
    requires_approval: Optional[bool] = None
    requires_vendor: Optional[bool] = None
    requires_amount: Optional[bool] = None
    requires_lock_box: Optional[bool] = None


class StageResponse(StageBase):
    id: UUID
    model_config = ConfigDict(from_attributes=True)


# Turn schemas
class TurnCreate(BaseModel):
    property_id: UUID
    priority: str = Field(default="medium", pattern=PRIORITY_PATTERN)
    vendor_id: Optional[UUID] = None
    estimated_cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    move_out_date: Optional[date] = None
    due_date: Optional[date] = None
    scope_of_work: Optional[str] = None
    notes: Optional[str] = None
    power_status: Optional[bool] = None
    water_status: Optional[bool] = None
    gas_status: Optional[bool] = None
    trash_out_needed: bool = False
    appliances_needed: bool = False


class TurnUpdate(BaseModel):
    """Partial turn patch; only fields present in the request body are applied."""
    status: Optional[str] = Field(default=None, pattern=TURN_STATUS_PATTERN)
    stage_id: Optional[UUID] = None
    vendor_id: Optional[UUID] = None
    priority: Optional[str] = Field(default=None, pattern=PRIORITY_PATTERN)
    estimated_cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    actual_cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    move_out_date: Optional[date] = None
    due_date: Optional[date] = None
    completion_date: Optional[datetime] = None
    scope_of_work: Optional[str] = None
    notes: Optional[str] = None
    power_status: Optional[bool] = None
    water_status: Optional[bool] = None
    gas_status: Optional[bool] = None
    trash_out_needed: Optional[bool] = None
    appliances_needed: Optional[bool] = None

    comment: Optional[str] = Field(default=None, max_length=2000)
    expected_version: Optional[int] = Field(default=None, ge=1)

    def changes(self) -> dict:
        """Explicitly provided turn fields (an explicit null clears a nullable field)."""
        data = self.model_dump(include=self.model_fields_set)
        data.pop("comment", None)
        data.pop("expected_version", None)
        return data


class TurnResponse(BaseModel):
    id: UUID
    turn_number: str
    property_id: UUID
    status: str
    priority: str
    stage_id: Optional[UUID] = None
    stage_entered_at: Optional[datetime] = None
    vendor_id: Optional[UUID] = None
    estimated_cost: Optional[Decimal] = None
    actual_cost: Optional[Decimal] = None
    move_out_date: Optional[date] = None
    due_date: Optional[date] = None
    completion_date: Optional[datetime] = None
    scope_of_work: Optional[str] = None
    notes: Optional[str] = None
    power_status: Optional[bool] = None
    water_status: Optional[bool] = None
    gas_status: Optional[bool] = None
    trash_out_needed: bool = False
    appliances_needed: bool = False
    needs_dfo_approval: bool = False
    needs_ho_approval: bool = False
    dfo_approved_by: Optional[UUID] = None
    dfo_approved_at: Optional[datetime] = None
    ho_approved_by: Optional[UUID] = None
    ho_approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class TurnHistoryResponse(BaseModel):
    id: UUID
    turn_id: UUID
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    previous_stage_id: Optional[UUID] = None
    new_stage_id: Optional[UUID] = None
    changed_by: Optional[UUID] = None
    comment: Optional[str] = None
    changed_data: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# Approval threshold schemas
class ThresholdCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    min_amount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    max_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    approval_type: str = Field(pattern=TIER_PATTERN)
    requires_sequential: bool = False
    is_active: bool = True


class ThresholdUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    min_amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    max_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    approval_type: Optional[str] = Field(default=None, pattern=TIER_PATTERN)
    requires_sequential: Optional[bool] = None
    is_active: Optional[bool] = None


class ThresholdResponse(BaseModel):
    id: UUID
    name: str
    min_amount: Decimal
    max_amount: Optional[Decimal] = None
    approval_type: str
    requires_sequential: bool
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class TierResolutionResponse(BaseModel):
    tier: str
    requires_sequential: bool
    threshold_id: Optional[UUID] = None
    threshold_name: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class TierResolutionsResponse(BaseModel):
    """Matching bands for an amount plus the tiers a turn at that amount must clear."""
    amount: Decimal
    tiers: list[TierResolutionResponse]
    required_tiers: list[str]


# Approval decision schemas
class ApprovalDecisionCreate(BaseModel):
    tier: str = Field(pattern=TIER_PATTERN)
    decision: str = Field(pattern="^(approved|rejected)$")
    comment: Optional[str] = Field(default=None, max_length=2000)
    override: bool = False


class ApprovalDecisionResponse(BaseModel):
    id: UUID
    turn_id: UUID
    approver_id: UUID
    approver_role: str
    tier: str
    decision: str
    comment: Optional[str] = None
    amount: Optional[Decimal] = None
    is_override: bool = False
    decided_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ApprovalStateResponse(BaseModel):
    turn_id: UUID
    status: str = Field(pattern="^(not_required|pending|approved|rejected)$")
    amount: Optional[Decimal] = None
    required_tiers: list[str]
    tiers: dict[str, str]
    outstanding: list[str]
    rejected_tiers: list[str]
    rejection_reason: Optional[str] = None
    eligible_to_advance: bool
    needs_dfo_approval: bool
    needs_ho_approval: bool


# Lock box schemas
class LockBoxUpdate(BaseModel):
    """Lock box change request. Fields absent from the body are left untouched."""
    new_code: Optional[str] = Field(default=None, max_length=50)
    location: Optional[str] = Field(default=None, pattern=LOCATION_PATTERN)
    install_date: Optional[date] = None
    notes: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=2000)
    turn_id: Optional[UUID] = None
    expected_version: Optional[int] = Field(default=None, ge=1)

    def requested_fields(self) -> dict:
        fields = {"new_code", "location", "install_date", "notes"} & self.model_fields_set
        return self.model_dump(include=fields)


class LockBoxSnapshot(BaseModel):
    property_id: UUID
    code: Optional[str] = None
    location: Optional[str] = None
    install_date: Optional[date] = None
    notes: Optional[str] = None
    version: int


class LockBoxHistoryResponse(BaseModel):
    id: UUID
    property_id: UUID
    turn_id: Optional[UUID] = None
    lock_box_install_date: Optional[date] = None
    lock_box_location: Optional[str] = None
    old_lock_box_code: Optional[str] = None
    new_lock_box_code: Optional[str] = None
    changed_fields: list[str] = Field(default_factory=list)
    change_date: datetime
    changed_by: Optional[UUID] = None
    reason: str
    model_config = ConfigDict(from_attributes=True)
