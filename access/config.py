"""
Static authorization configuration - no dependencies on other access modules.

The role -> permission mapping is fixed at process start and is not
editable at request time. Runtime tunables (TTLs, rate limits, TOTP
parameters) live in config.settings.
"""

# =============================================================================
# Permissions
# =============================================================================

# All available permissions in the system
DEFAULT_PERMISSIONS = [
    ("view_vehicles", "View vehicles and their assignment history"),
    ("manage_vehicles", "Create, edit, and retire vehicles"),
    ("transfer_vehicles", "Transfer vehicles between facilities or departments"),
    ("view_facilities", "View facilities and maintenance schedules"),
    ("manage_facilities", "Create, edit, and delete facilities"),
    ("view_personnel", "View department personnel records"),
    ("manage_personnel", "Create, edit, and delete personnel records"),
    ("manage_department", "Edit department settings and assignments"),
    ("manage_departments", "Create and delete departments"),
    ("manage_users", "Create, edit, and deactivate user accounts"),
    ("view_reports", "Generate and export fleet reports"),
    ("view_audit_log", "Read the security audit trail"),
]

KNOWN_PERMISSIONS = frozenset(p[0] for p in DEFAULT_PERMISSIONS)

# =============================================================================
# Roles
# =============================================================================

SUPER_ADMIN = "super_admin"

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    SUPER_ADMIN: KNOWN_PERMISSIONS,
    "org_admin": frozenset({
        "view_vehicles", "view_facilities", "view_personnel",
        "manage_departments", "manage_users", "view_reports",
    }),
    "macs_head": frozenset({
        "view_vehicles", "manage_vehicles", "transfer_vehicles",
        "view_facilities", "manage_facilities",
        "view_personnel", "manage_personnel",
        "manage_department", "view_reports",
    }),
    "fleet_admin": frozenset({
        "view_vehicles", "manage_vehicles", "transfer_vehicles",
        "view_facilities", "view_reports",
    }),
    "auditor": frozenset({
        "view_vehicles", "view_facilities", "view_personnel",
        "view_reports", "view_audit_log",
    }),
    "department_user": frozenset({"view_vehicles", "view_facilities"}),
}

# Roles allowed to act on resources owned by any department.
# This is the only override of department scoping.
CROSS_DEPARTMENT_ROLES = frozenset({SUPER_ADMIN})

# =============================================================================
# Clearance Levels
# =============================================================================

CLEARANCE_RANKS = {
    "standard": 1,
    "elevated": 2,
    "high": 3,
    "restricted": 4,
}

# Government classification names used by older account records
CLEARANCE_ALIASES = {
    "confidential": "elevated",
    "secret": "high",
    "top_secret": "restricted",
}
