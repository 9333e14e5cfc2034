"""Authenticated actor resolution and role-based authorization.

Identity is owned by an external provider. This module only verifies the bearer
token it issued and reads two claims from it: ``sub`` (actor id) and ``role``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import settings

# Bearer token scheme
security = HTTPBearer()


ROLES: tuple[str, ...] = (
    "super_admin",
    "admin",
    "property_manager",
    "sr_property_manager",
    "vendor",
    "inspector",
    "dfo_approver",
    "ho_approver",
)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller as seen by the engine."""

    id: UUID
    role: str
    name: str | None = None


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> dict:
    """Decode and validate an access token (signature, exp with leeway, iat sanity)."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise _unauthorized()

    now = int(time.time())
    try:
        exp = int(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise _unauthorized()
    if now > exp + int(settings.JWT_LEEWAY_SECONDS):
        raise _unauthorized("Token expired")

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise _unauthorized()
        # Reject tokens issued far in the future (clock skew / malicious tokens).
        if iat_int > now + int(settings.JWT_LEEWAY_SECONDS):
            raise _unauthorized()
    return payload


def actor_from_claims(payload: dict) -> Actor:
    """Build an Actor from verified token claims."""
    sub = payload.get("sub")
    if not sub:
        raise _unauthorized()
    try:
        actor_id = UUID(str(sub))
    except ValueError:
        raise _unauthorized()

    role = str(payload.get("role") or "").strip().lower()
    if role not in ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
    return Actor(id=actor_id, role=role, name=payload.get("name"))


def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """Get current authenticated actor."""
    payload = decode_token(credentials.credentials)
    if payload.get("type", "access") != "access":
        raise _unauthorized("Invalid token type")
    return actor_from_claims(payload)


# Permission checks
class PermissionChecker:
    """Check actor permissions based on role."""

    def __init__(self, required_permission: str):
        self.required_permission = required_permission

    def __call__(self, actor: Actor = Depends(get_current_actor)) -> Actor:
        """Check if actor has required permission."""
        if not check_permission(actor, self.required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {self.required_permission} required",
            )
        return actor


_ALL = {
    "canViewTurns": True,
    "canEditTurns": True,
    "canDeleteTurns": True,
    "canViewTurnHistory": True,
    "canManageStages": True,
    "canManageThresholds": True,
    "canManageLockBoxes": True,
    "canViewLockBoxHistory": True,
}

# Role permissions matrix
ROLE_PERMISSIONS: dict[str, dict[str, bool]] = {
    "super_admin": dict(_ALL),
    "admin": dict(_ALL),
    "sr_property_manager": {
        **_ALL,
        "canManageStages": False,
        "canManageThresholds": False,
    },
    "property_manager": {
        **_ALL,
        "canDeleteTurns": False,
        "canManageStages": False,
        "canManageThresholds": False,
    },
    "inspector": {
        "canViewTurns": True,
        "canEditTurns": True,
        "canViewTurnHistory": True,
        "canManageLockBoxes": True,
        "canViewLockBoxHistory": True,
    },
    "vendor": {
        "canViewTurns": True,
    },
    "dfo_approver": {
        "canViewTurns": True,
        "canViewTurnHistory": True,
    },
    "ho_approver": {
        "canViewTurns": True,
        "canViewTurnHistory": True,
    },
}

# Which roles may record a decision for each approval tier.
TIER_APPROVER_ROLES: dict[str, frozenset[str]] = {
    "dfo": frozenset({"dfo_approver", "admin", "super_admin"}),
    "ho": frozenset({"ho_approver", "super_admin"}),
}


def check_permission(actor: Actor, permission: str) -> bool:
    """Check if actor has specific permission."""
    permissions = ROLE_PERMISSIONS.get(actor.role, {})
    return permissions.get(permission, False)


def can_decide_tier(actor: Actor, tier: str) -> bool:
    return actor.role in TIER_APPROVER_ROLES.get(tier, frozenset())
