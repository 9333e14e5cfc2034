from datetime import date
from types import SimpleNamespace

import pytest

from turnflow.domain_errors import ValidationError
from turnflow.services.lockbox_rules import (
    diff_lock_box,
    ensure_lock_box_changed,
    ensure_reason,
    has_current_code,
    normalize_code,
)


def _property(**overrides):
    values = dict(
        lock_box_code="1234",
        lock_box_location="front",
        lock_box_install_date=date(2025, 1, 10),
        lock_box_notes=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_only_provided_fields_are_compared() -> None:
    change = diff_lock_box(_property(), {"new_code": "9876"})

    assert change.changed == {"lock_box_code": ("1234", "9876")}
    assert change.changed_fields == ["lock_box_code"]


def test_identical_values_are_not_a_change() -> None:
    change = diff_lock_box(
        _property(),
        {"new_code": " 1234 ", "location": "front", "install_date": "2025-01-10"},
    )

    assert change.changed == {}
    with pytest.raises(ValidationError) as exc:
        ensure_lock_box_changed(change)
    assert exc.value.code == "LOCKBOX_NO_CHANGE"


def test_blank_code_clears_the_lock_box() -> None:
    change = diff_lock_box(_property(), {"new_code": "   "})

    assert change.changed == {"lock_box_code": ("1234", None)}
    assert change.changed_fields == ["lock_box_code"]


def test_reason_is_mandatory_and_trimmed() -> None:
    assert ensure_reason("  rekeyed after move-out ") == "rekeyed after move-out"
    for blank in (None, "", "   "):
        with pytest.raises(ValidationError) as exc:
            ensure_reason(blank)
        assert exc.value.code == "LOCKBOX_REASON_REQUIRED"


def test_current_code_detection() -> None:
    assert normalize_code(None) is None
    assert has_current_code(_property()) is True
    assert has_current_code(_property(lock_box_code=" ")) is False
