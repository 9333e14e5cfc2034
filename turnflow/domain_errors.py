"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    kind: ClassVar[str] = "domain_error"

    def __str__(self) -> str:
        return self.message


class ValidationError(DomainError):
    """Malformed or missing input; the caller can fix it and retry."""

    kind = "validation_error"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=400, message=message, details=details)


class NotFound(DomainError):
    kind = "not_found"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=404, message=message, details=details)


class Forbidden(DomainError):
    kind = "forbidden"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=403, message=message, details=details)


class Conflict(DomainError):
    """Stale version, protected entity or a business rule ordering conflict."""

    kind = "conflict"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=409, message=message, details=details)


class ApprovalRequired(Conflict):
    """Transition blocked until the named approval tiers are approved."""

    kind = "approval_required"

    def __init__(self, tiers: list[str], message: str | None = None) -> None:
        super().__init__(
            code="APPROVAL_REQUIRED",
            message=message or f"Approval required: {', '.join(tiers)}",
            details={"tiers": list(tiers)},
        )

    @property
    def tiers(self) -> list[str]:
        return list((self.details or {}).get("tiers", []))


class SequenceViolation(Conflict):
    kind = "sequence_violation"


class AlreadyDecided(Conflict):
    kind = "already_decided"


class Unavailable(DomainError):
    """Storage or another infrastructure dependency is down; not retried here."""

    kind = "unavailable"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=503, message=message, details=details)
