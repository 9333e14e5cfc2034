"""Approval threshold resolution and aggregate approval state.

Everything in this module is a pure function of the threshold table and the
decision records, so the aggregate state can always be recomputed and never
drifts from the stored decisions.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from ..domain_errors import SequenceViolation
from ..models import APPROVAL_TIERS

# Lowest tier first; a sequential tier depends on every tier before it.
TIER_ORDER: tuple[str, ...] = APPROVAL_TIERS


@dataclass(frozen=True)
class TierResolution:
    tier: str
    requires_sequential: bool
    threshold_id: UUID | None = None
    threshold_name: str | None = None


@dataclass(frozen=True)
class ApprovalState:
    status: str  # not_required | pending | approved | rejected
    required_tiers: list[str]
    tiers: dict[str, str]
    outstanding: list[str]
    rejected_tiers: list[str] = field(default_factory=list)
    rejection_reason: str | None = None
    approvers: dict[str, UUID | None] = field(default_factory=dict)
    approved_at: dict[str, datetime | None] = field(default_factory=dict)

    @property
    def eligible_to_advance(self) -> bool:
        return not self.outstanding


def _tier_rank(tier: str) -> int:
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        return len(TIER_ORDER)


def approval_amount(*, estimated_cost: Decimal | None, actual_cost: Decimal | None) -> Decimal | None:
    """The amount approvals are resolved against: the larger known cost."""
    known = [Decimal(value) for value in (estimated_cost, actual_cost) if value is not None]
    if not known:
        return None
    return max(known)


def band_contains(threshold: Any, amount: Decimal) -> bool:
    if amount < Decimal(threshold.min_amount):
        return False
    return threshold.max_amount is None or amount < Decimal(threshold.max_amount)


def resolve_tiers(thresholds: Iterable[Any], amount: Decimal | None) -> list[TierResolution]:
    """Return every active band containing `amount`, lowest tier first.

    Overlapping bands are all returned; an amount below every band resolves to [].
    """
    if amount is None:
        return []
    value = Decimal(amount)
    matches = [
        threshold
        for threshold in thresholds
        if threshold.is_active and band_contains(threshold, value)
    ]
    matches.sort(key=lambda t: (_tier_rank(t.approval_type), Decimal(t.min_amount), t.name or ""))
    return [
        TierResolution(
            tier=threshold.approval_type,
            requires_sequential=bool(threshold.requires_sequential),
            threshold_id=threshold.id,
            threshold_name=threshold.name,
        )
        for threshold in matches
    ]


def prerequisite_tiers(tier: str) -> list[str]:
    rank = _tier_rank(tier)
    return list(TIER_ORDER[:rank])


def required_tiers(resolutions: Sequence[TierResolution]) -> list[str]:
    """Resolved tiers plus the lower tiers a sequential tier depends on."""
    required: set[str] = set()
    for resolution in resolutions:
        required.add(resolution.tier)
        if resolution.requires_sequential:
            required.update(prerequisite_tiers(resolution.tier))
    return sorted(required, key=_tier_rank)


def sequential_tiers(resolutions: Sequence[TierResolution]) -> list[str]:
    tiers = {resolution.tier for resolution in resolutions if resolution.requires_sequential}
    return sorted(tiers, key=_tier_rank)


def tier_is_sequential(thresholds: Iterable[Any], tier: str) -> bool:
    """A tier is sequential if any active band for it is, whatever amount is being decided."""
    return any(
        threshold.is_active and threshold.requires_sequential
        for threshold in thresholds
        if threshold.approval_type == tier
    )


def latest_decisions(decisions: Iterable[Any]) -> dict[str, Any]:
    """Latest decision record per tier (records are immutable; the newest wins)."""
    latest: dict[str, Any] = {}
    for _, record in sorted(
        enumerate(decisions),
        key=lambda pair: (pair[1].decided_at is not None, pair[1].decided_at or datetime.min, pair[0]),
    ):
        latest[record.tier] = record
    return latest


def derive_approval_state(required: Sequence[str], decisions: Iterable[Any]) -> ApprovalState:
    latest = latest_decisions(decisions)
    tiers: dict[str, str] = {}
    outstanding: list[str] = []
    rejected: list[str] = []
    approvers: dict[str, UUID | None] = {}
    approved_at: dict[str, datetime | None] = {}
    rejection_reason: str | None = None

    for tier in required:
        record = latest.get(tier)
        decision = record.decision if record is not None else "pending"
        tiers[tier] = decision
        if decision == "approved":
            approvers[tier] = record.approver_id
            approved_at[tier] = record.decided_at
            continue
        outstanding.append(tier)
        if decision == "rejected":
            rejected.append(tier)
            rejection_reason = record.comment or rejection_reason

    if not required:
        status = "not_required"
    elif rejected:
        status = "rejected"
    elif outstanding:
        status = "pending"
    else:
        status = "approved"

    return ApprovalState(
        status=status,
        required_tiers=list(required),
        tiers=tiers,
        outstanding=outstanding,
        rejected_tiers=rejected,
        rejection_reason=rejection_reason,
        approvers=approvers,
        approved_at=approved_at,
    )


def approval_flags(state: ApprovalState, *, sequential_tiers: Iterable[str]) -> dict[str, Any]:
    """Denormalized turn columns derived from `state`.

    A sequential tier is only flagged as needed once its prerequisites are approved.
    """
    sequential = set(sequential_tiers)
    outstanding = set(state.outstanding)

    def _needs(tier: str) -> bool:
        if tier not in outstanding:
            return False
        if tier in sequential:
            return not any(prereq in outstanding for prereq in prerequisite_tiers(tier))
        return True

    return {
        "needs_dfo_approval": _needs("dfo"),
        "needs_ho_approval": _needs("ho"),
        "dfo_approved_by": state.approvers.get("dfo"),
        "dfo_approved_at": state.approved_at.get("dfo"),
        "ho_approved_by": state.approvers.get("ho"),
        "ho_approved_at": state.approved_at.get("ho"),
        "rejection_reason": state.rejection_reason,
    }


def ensure_sequence(*, tier: str, sequential: bool, decisions: Iterable[Any]) -> None:
    if not sequential:
        return
    latest = latest_decisions(decisions)
    blocking = [
        prereq
        for prereq in prerequisite_tiers(tier)
        if latest.get(prereq) is None or latest[prereq].decision != "approved"
    ]
    if blocking:
        raise SequenceViolation(
            code="APPROVAL_SEQUENCE_VIOLATION",
            message=f"Tier '{tier}' requires prior approval of: {', '.join(blocking)}",
            details={"tier": tier, "prerequisites": blocking},
        )
