"""Lock box change detection and validation helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from ..domain_errors import ValidationError

# Request field -> Property column.
LOCK_BOX_FIELDS: dict[str, str] = {
    "new_code": "lock_box_code",
    "location": "lock_box_location",
    "install_date": "lock_box_install_date",
    "notes": "lock_box_notes",
}


@dataclass(frozen=True)
class LockBoxChange:
    changed: dict[str, tuple[Any, Any]]  # column -> (old, new)

    @property
    def changed_fields(self) -> list[str]:
        return sorted(self.changed)


def normalize_code(code: str | None) -> str | None:
    if code is None:
        return None
    stripped = code.strip()
    return stripped or None


def _normalize(column: str, value: Any) -> Any:
    if column == "lock_box_code":
        return normalize_code(value)
    if column == "lock_box_notes":
        return (value or "").strip() or None
    if column == "lock_box_install_date" and isinstance(value, str):
        return date.fromisoformat(value)
    return value


def diff_lock_box(current: Any, requested: dict[str, Any]) -> LockBoxChange:
    """Compare requested fields (only those provided) with the property's current state."""
    changed: dict[str, tuple[Any, Any]] = {}
    for field_name, column in LOCK_BOX_FIELDS.items():
        if field_name not in requested:
            continue
        new = _normalize(column, requested[field_name])
        old = getattr(current, column)
        if new != old:
            changed[column] = (old, new)
    return LockBoxChange(changed=changed)


def ensure_lock_box_changed(change: LockBoxChange) -> None:
    if not change.changed:
        raise ValidationError(
            code="LOCKBOX_NO_CHANGE",
            message="Lock box update does not change any field",
        )


def ensure_reason(reason: str | None) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError(
            code="LOCKBOX_REASON_REQUIRED",
            message="A reason is required for every lock box change",
        )
    return cleaned


def has_current_code(property_row: Any) -> bool:
    return normalize_code(getattr(property_row, "lock_box_code", None)) is not None
