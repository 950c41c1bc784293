"""
Authorization: the permission evaluator.

Handles:
- Permission checks against the static role -> permission mapping
- Role membership checks
- Department scoping (super_admin is the only cross-department role)
- Clearance level comparison

Everything here is a pure function of the principal snapshot and the
requirement. No store access, no logging, no audit.
"""
from typing import Iterable, Optional

from .config import (
    CLEARANCE_ALIASES,
    CLEARANCE_RANKS,
    CROSS_DEPARTMENT_ROLES,
    KNOWN_PERMISSIONS,
    ROLE_PERMISSIONS,
)
from .types import Decision, ErrorCode, Principal, Requirement


# =============================================================================
# Permission Queries
# =============================================================================

def permissions_for_roles(roles: Iterable[str]) -> frozenset[str]:
    """Union of the permissions implied by each role. Unknown roles imply nothing.

    Args:
        roles: Role names held by a principal

    Returns:
        Frozen set of permission names
    """
    granted: set[str] = set()
    for role in roles:
        granted |= ROLE_PERMISSIONS.get(role, frozenset())
    return frozenset(granted)


def clearance_rank(level: Optional[str]) -> Optional[int]:
    """Rank of a clearance level name, or None when the level is unknown."""
    if not level:
        return None
    name = level.lower()
    name = CLEARANCE_ALIASES.get(name, name)
    return CLEARANCE_RANKS.get(name)


# =============================================================================
# Individual Checks
# =============================================================================

def check_permission(principal: Principal, permission: str) -> Decision:
    if permission not in KNOWN_PERMISSIONS:
        return Decision.deny(ErrorCode.UNKNOWN_PERMISSION)
    if permission in permissions_for_roles(principal.roles):
        return Decision.allow()
    return Decision.deny(ErrorCode.PERMISSION_DENIED)


def check_role(principal: Principal, any_of_roles: Iterable[str]) -> Decision:
    if principal.roles & frozenset(any_of_roles):
        return Decision.allow()
    return Decision.deny(ErrorCode.ROLE_REQUIRED)


def check_department(principal: Principal, department: str) -> Decision:
    if principal.roles & CROSS_DEPARTMENT_ROLES:
        return Decision.allow()
    if principal.department == department:
        return Decision.allow()
    return Decision.deny(ErrorCode.DEPARTMENT_MISMATCH)


def check_clearance(principal: Principal, minimum: str) -> Decision:
    required = clearance_rank(minimum)
    held = clearance_rank(principal.clearance_level)
    if required is None or held is None or held < required:
        return Decision.deny(ErrorCode.INSUFFICIENT_CLEARANCE)
    return Decision.allow()


# =============================================================================
# Evaluator
# =============================================================================

class PermissionEvaluator:
    """Decides whether a principal satisfies a requirement.

    Checks run in the order permission, role, department, clearance and the
    first Deny is returned. A requirement with no fields set is allowed.
    """

    def evaluate(self, principal: Principal, requirement: Requirement) -> Decision:
        if requirement.permission is not None:
            decision = check_permission(principal, requirement.permission)
            if not decision.allowed:
                return decision

        if requirement.any_of_roles:
            decision = check_role(principal, requirement.any_of_roles)
            if not decision.allowed:
                return decision

        if requirement.department_of_resource is not None:
            decision = check_department(principal, requirement.department_of_resource)
            if not decision.allowed:
                return decision

        if requirement.minimum_clearance is not None:
            decision = check_clearance(principal, requirement.minimum_clearance)
            if not decision.allowed:
                return decision

        return Decision.allow()
