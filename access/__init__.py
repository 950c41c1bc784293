"""
Fleet access control: authentication, authorization and MFA enrollment.

Public API:
- Service: AuthorizationService, RequestContext, GateResult, security_headers
- Decorators: jwt_required, permission_required, role_required,
  department_scoped, clearance_required, mfa_required, audited
- Components: AuthenticationGateway, PermissionEvaluator,
  MFAEnrollmentCoordinator, CredentialStore, InMemoryCredentialStore,
  PasswordPolicy, device_fingerprint
- Types: Principal, User, SessionRecord, Requirement, Decision, ErrorCode

Import Rules:
- External callers: Use `from access import X` (this facade)
- Internal access modules: Use `from .submodule import X` (direct imports)
- Ban: `from access import X` inside access submodules (causes facade import)
"""

# =============================================================================
# Service and Gates
# =============================================================================
from .middleware import (
    AuthorizationService,
    GateResult,
    RequestContext,
    security_headers,
)

# =============================================================================
# Decorators
# =============================================================================
from .decorators import (
    jwt_required,
    permission_required,
    role_required,
    department_scoped,
    clearance_required,
    mfa_required,
    audited,
    get_service,
)

# =============================================================================
# Components
# =============================================================================
from .enrollment import (
    EnrollmentResult,
    EnrollmentState,
    MFAEnrollmentCoordinator,
)
from .gateway import AuthenticationGateway
from .passwords import PasswordPolicy, device_fingerprint
from .permissions import PermissionEvaluator, permissions_for_roles
from .store import CredentialStore, InMemoryCredentialStore
from .tokens import create_token, decode_token, extract_bearer

# =============================================================================
# Types
# =============================================================================
from .types import (
    AuthFailure,
    BackupCode,
    Decision,
    ErrorCode,
    MFAMethod,
    Principal,
    Requirement,
    SessionRecord,
    TOTPCredential,
    User,
    WebAuthnCredential,
)

__all__ = [
    # Service
    "AuthorizationService",
    "GateResult",
    "RequestContext",
    "security_headers",
    # Decorators
    "jwt_required",
    "permission_required",
    "role_required",
    "department_scoped",
    "clearance_required",
    "mfa_required",
    "audited",
    "get_service",
    # Components
    "EnrollmentResult",
    "EnrollmentState",
    "MFAEnrollmentCoordinator",
    "AuthenticationGateway",
    "PasswordPolicy",
    "device_fingerprint",
    "PermissionEvaluator",
    "permissions_for_roles",
    "CredentialStore",
    "InMemoryCredentialStore",
    "create_token",
    "decode_token",
    "extract_bearer",
    # Types
    "AuthFailure",
    "BackupCode",
    "Decision",
    "ErrorCode",
    "MFAMethod",
    "Principal",
    "Requirement",
    "SessionRecord",
    "TOTPCredential",
    "User",
    "WebAuthnCredential",
]
