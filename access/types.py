"""
Auth domain types - no dependencies on other access modules.

Everything here is immutable except the store-owned credential records,
which the store only ever mutates under its per-user lock.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Failure taxonomy shared by the evaluator, gateway, enrollment and gates."""
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    REVOKED_TOKEN = "revoked_token"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN_PERMISSION = "unknown_permission"
    ROLE_REQUIRED = "role_required"
    DEPARTMENT_MISMATCH = "department_mismatch"
    INSUFFICIENT_CLEARANCE = "insufficient_clearance"
    MFA_REQUIRED = "mfa_required"
    MFA_NOT_ENROLLED = "mfa_not_enrolled"
    MFA_INVALID_CODE = "mfa_invalid_code"
    MFA_RATE_LIMITED = "mfa_rate_limited"
    ENROLLMENT_EXPIRED = "enrollment_expired"
    ENROLLMENT_CONFLICT = "enrollment_conflict"
    ENROLLMENT_INVALID_STATE = "enrollment_invalid_state"
    ENROLLMENT_FAILED = "enrollment_failed"
    BACKUP_CODE_ALREADY_USED = "backup_code_already_used"
    CLONE_DETECTED = "clone_detected"
    SYSTEM_ERROR = "system_error"


class MFAMethod(str, Enum):
    WEBAUTHN = "webauthn"
    TOTP = "totp"


@dataclass(frozen=True)
class User:
    """Durable identity record from the user directory."""
    id: str
    username: str
    department: str
    roles: frozenset[str] = frozenset()
    clearance_level: str = "standard"
    mfa_enrolled: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class Principal:
    """Identity resolved for a single request. Never persisted."""
    user_id: str
    roles: frozenset[str]
    department: str
    clearance_level: str
    mfa_satisfied: bool
    session_id: str
    username: str = ""


@dataclass(frozen=True)
class SessionRecord:
    """Session sub-interface record. mfa_satisfied is set at login or by step-up."""
    session_id: str
    user_id: str
    mfa_satisfied: bool
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    device_fingerprint: Optional[str] = None


@dataclass(frozen=True)
class WebAuthnCredential:
    credential_id: bytes
    public_key: bytes  # DER SubjectPublicKeyInfo
    algorithm: int  # COSE algorithm identifier
    sign_count: int
    created_at: datetime

    def with_sign_count(self, sign_count: int) -> "WebAuthnCredential":
        return replace(self, sign_count=sign_count)


@dataclass(frozen=True)
class TOTPCredential:
    secret_encrypted: bytes
    created_at: datetime
    algorithm: str = "SHA1"
    period: int = 30
    digits: int = 6
    last_used_step: Optional[int] = None


@dataclass(frozen=True)
class BackupCode:
    code_hash: str
    issued_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class Decision:
    """PermissionEvaluator result: Allow, or Deny with a reason."""
    allowed: bool
    reason: Optional[ErrorCode] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: ErrorCode) -> "Decision":
        return cls(False, reason)


@dataclass(frozen=True)
class Requirement:
    """What a request needs. Unset fields are not checked."""
    permission: Optional[str] = None
    any_of_roles: frozenset[str] = field(default_factory=frozenset)
    department_of_resource: Optional[str] = None
    minimum_clearance: Optional[str] = None


@dataclass(frozen=True)
class AuthFailure:
    """AuthenticationGateway failure variant."""
    code: ErrorCode
