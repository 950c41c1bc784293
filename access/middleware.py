"""
Per-request authorization gates.

``AuthorizationService`` is built once at process start with the store,
the audit recorder, settings and a clock, and holds the gateway, the
evaluator and the enrollment coordinator. Gates take a RequestContext
and return a GateResult; ``run_gates`` runs them in order and stops at
the first deny.

    service.run_gates(ctx, [
        service.authenticate_token,
        service.require_permission("transfer_vehicles"),
        service.require_department_access,
        service.require_mfa,
    ])

Deny responses expose only a category (unauthorized, forbidden,
mfa_required, mfa_not_enrolled, rate_limited, system_error). The
specific ErrorCode stays in ``GateResult.reason`` for logs and audit.

Any InfrastructureError raised while a gate runs (store down, deadline
exceeded, audit sink failure) fails closed: 503 system_error plus a
system_error audit entry when the audit sink is still reachable.
"""
import logging
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Iterable, Optional

from config.settings import AppSettings
from core.audit import AuditOutcome, AuditRecorder
from core.bounded import BoundedExecutor
from core.errors import InfrastructureError
from core.timestamps import Clock

from . import totp, webauthn
from .enrollment import MFAEnrollmentCoordinator
from .gateway import AuthenticationGateway
from .passwords import device_fingerprint
from .permissions import PermissionEvaluator
from .ratelimit import SlidingWindowLimiter
from .store import CredentialStore
from .tokens import extract_bearer
from .types import AuthFailure, ErrorCode, Principal, Requirement

logger = logging.getLogger(__name__)

# Request keys that name the department owning the target resource
DEPARTMENT_KEYS = ("department_id", "departmentId")

MFA_CODE_HEADER = "X-MFA-Code"
MFA_BACKUP_CODE_HEADER = "X-MFA-Backup-Code"
MFA_ASSERTION_FIELD = "mfa_assertion"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "connect-src 'self' wss: ws:; "
    "font-src 'self';"
)

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}

HSTS_HEADER = ("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")


# =============================================================================
# Request / Result Values
# =============================================================================

@dataclass
class RequestContext:
    """Framework-neutral view of an inbound request.

    ``attempt_id`` is minted by the server for every request and keys audit
    de-duplication. ``request_id`` is the caller's correlation id; it is
    recorded with audit entries but never used to suppress one.

    ``principal`` is filled in by authenticate_token and replaced by
    require_mfa after a successful step-up.
    """
    headers: Mapping[str, str] = field(default_factory=dict)
    path_params: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Optional[Any] = None
    method: str = "GET"
    path: str = "/"
    is_secure: bool = False
    remote_addr: Optional[str] = None
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    request_id: Optional[str] = None
    principal: Optional[Principal] = None

    @property
    def correlation_id(self) -> str:
        """Caller's X-Request-ID when it sent a usable one, else the attempt id."""
        return self.request_id or self.attempt_id

    def fingerprint(self) -> str:
        return device_fingerprint(
            self.header("User-Agent"),
            self.header("Accept-Language"),
            self.header("Accept-Encoding"),
        )

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name)
        if value is None:
            lowered = name.lower()
            for key, candidate in self.headers.items():
                if key.lower() == lowered:
                    return candidate
        return value

    def target_department(self) -> Optional[str]:
        """Department of the resource, from path params, then body, then query."""
        for source in (self.path_params, self.body, self.query):
            if not isinstance(source, Mapping):
                continue
            for key in DEPARTMENT_KEYS:
                value = source.get(key)
                if value:
                    return str(value)
        return None


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    status: int = 200
    category: Optional[str] = None
    reason: Optional[ErrorCode] = None

    @classmethod
    def allow(cls) -> "GateResult":
        return cls(True)

    @classmethod
    def deny(cls, status: int, category: str, reason: ErrorCode) -> "GateResult":
        return cls(False, status, category, reason)

    def body(self) -> dict:
        """Client-facing JSON body for a deny."""
        return {"error": self.category}


Gate = Callable[[RequestContext], GateResult]

UNAUTHENTICATED = GateResult.deny(401, "unauthorized", ErrorCode.INVALID_TOKEN)


def security_headers(is_secure: bool) -> dict[str, str]:
    """Response headers applied to every response, allowed or denied."""
    headers = dict(SECURITY_HEADERS)
    if is_secure:
        headers[HSTS_HEADER[0]] = HSTS_HEADER[1]
    return headers


def _status_outcome(result: Any) -> AuditOutcome:
    """Map a handler's return value to an audit outcome."""
    if isinstance(result, GateResult):
        return AuditOutcome.SUCCESS if result.allowed else AuditOutcome.DENIED

    status = getattr(result, "status_code", None)
    if status is None and isinstance(result, tuple) and len(result) >= 2 and isinstance(result[1], int):
        status = result[1]
    if status is None or status < 400:
        return AuditOutcome.SUCCESS
    if status in (401, 403):
        return AuditOutcome.DENIED
    if status >= 500:
        return AuditOutcome.SYSTEM_ERROR
    return AuditOutcome.FAILURE


# =============================================================================
# Service
# =============================================================================

class AuthorizationService:
    """Composes the gateway, evaluator, enrollment coordinator and audit trail."""

    def __init__(
        self,
        store: CredentialStore,
        recorder: AuditRecorder,
        settings: AppSettings,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.settings = settings
        self.clock = clock or Clock()

        self.bounded = BoundedExecutor(settings.auth.store_timeout_seconds)
        self.cipher = totp.SecretCipher(settings)
        self.evaluator = PermissionEvaluator()
        self.gateway = AuthenticationGateway(store, settings, self.clock)
        self.enrollment = MFAEnrollmentCoordinator(
            store, recorder, settings, self.clock, self.bounded, self.cipher
        )

        self._step_up_limiter = SlidingWindowLimiter(
            settings.mfa.step_up_max_attempts,
            timedelta(minutes=settings.mfa.step_up_window_minutes),
            self.clock,
        )
        # session_id -> (challenge, expires_at)
        self._step_up_challenges: dict[str, tuple[bytes, datetime]] = {}
        self._challenges_lock = threading.Lock()

        self._purge_interval = timedelta(seconds=settings.mfa.purge_interval_seconds)
        self._next_purge: Optional[datetime] = None
        self._purge_lock = threading.Lock()

    # =========================================================================
    # Internals
    # =========================================================================

    def _audit(self, ctx: RequestContext, operation: str, outcome: AuditOutcome,
               target_department: Optional[str] = None, detail: Optional[str] = None):
        actor = ctx.principal.user_id if ctx.principal else None
        return self.bounded.call(
            self.recorder.record,
            actor,
            operation,
            outcome,
            target_department=target_department,
            detail=detail,
            attempt_id=ctx.attempt_id,
            request_id=ctx.request_id,
        )

    def _audit_quietly(self, ctx: RequestContext, operation: str, outcome: AuditOutcome,
                       target_department: Optional[str] = None, detail: Optional[str] = None) -> None:
        """Audit without raising. Used where the request outcome is already decided."""
        try:
            self._audit(ctx, operation, outcome, target_department, detail)
        except Exception:
            logger.exception(f"Failed to record audit entry for {operation}")

    def _guard(self, gate_name: str, ctx: RequestContext, check: Callable[[], GateResult]) -> GateResult:
        try:
            return check()
        except InfrastructureError as e:
            logger.error(f"{gate_name} failed closed: {type(e).__name__}: {e}")
            self._audit_quietly(ctx, gate_name, AuditOutcome.SYSTEM_ERROR,
                                detail=f"{type(e).__name__} during {ctx.method} {ctx.path}")
            return GateResult.deny(503, "system_error", ErrorCode.SYSTEM_ERROR)

    def _evaluate(self, ctx: RequestContext, requirement: Requirement):
        return self.evaluator.evaluate(ctx.principal, requirement)

    # =========================================================================
    # Gates
    # =========================================================================

    def run_gates(self, ctx: RequestContext, gates: Iterable[Gate]) -> GateResult:
        """Run gates in order and return the first deny, or allow."""
        for gate in gates:
            result = gate(ctx)
            if not result.allowed:
                return result
        return GateResult.allow()

    def authenticate_token(self, ctx: RequestContext) -> GateResult:
        """Resolve the bearer token into ``ctx.principal``. 401 on failure."""
        def check() -> GateResult:
            token = extract_bearer(ctx.header("Authorization"))
            if not token:
                return UNAUTHENTICATED

            result = self.bounded.call(self.gateway.authenticate, token, ctx.fingerprint())
            if isinstance(result, AuthFailure):
                logger.info(f"Token rejected ({result.code.value}) for {ctx.method} {ctx.path}")
                return GateResult.deny(401, "unauthorized", result.code)

            ctx.principal = result
            return GateResult.allow()

        return self._guard("authenticate_token", ctx, check)

    def require_permission(self, permission: str) -> Gate:
        def gate(ctx: RequestContext) -> GateResult:
            if ctx.principal is None:
                return UNAUTHENTICATED

            def check() -> GateResult:
                decision = self._evaluate(ctx, Requirement(permission=permission))
                if decision.allowed:
                    return GateResult.allow()
                logger.warning(
                    f"Permission denied: {ctx.principal.username or ctx.principal.user_id} "
                    f"lacks {permission} ({decision.reason.value})"
                )
                self._audit(ctx, "permission_check", AuditOutcome.DENIED,
                            target_department=ctx.principal.department,
                            detail=f"permission={permission} reason={decision.reason.value}")
                return GateResult.deny(403, "forbidden", decision.reason)

            return self._guard("require_permission", ctx, check)
        gate.__name__ = f"require_permission({permission})"
        return gate

    def require_role(self, *roles: str) -> Gate:
        wanted = frozenset(roles)

        def gate(ctx: RequestContext) -> GateResult:
            if ctx.principal is None:
                return UNAUTHENTICATED
            decision = self._evaluate(ctx, Requirement(any_of_roles=wanted))
            if decision.allowed:
                return GateResult.allow()
            logger.warning(
                f"Role access denied: {ctx.principal.username or ctx.principal.user_id} "
                f"attempted {' or '.join(sorted(wanted))}"
            )
            return GateResult.deny(403, "forbidden", decision.reason)
        gate.__name__ = f"require_role({', '.join(roles)})"
        return gate

    def require_department_access(self, ctx: RequestContext) -> GateResult:
        """Deny when the target resource belongs to another department.

        A request that names no department acts within the principal's own
        department and is allowed.
        """
        if ctx.principal is None:
            return UNAUTHENTICATED

        department = ctx.target_department()
        if department is None:
            return GateResult.allow()

        def check() -> GateResult:
            decision = self._evaluate(ctx, Requirement(department_of_resource=department))
            if decision.allowed:
                return GateResult.allow()
            logger.warning(
                f"Department access denied: {ctx.principal.username or ctx.principal.user_id} "
                f"({ctx.principal.department}) attempted access to department {department}"
            )
            self._audit(ctx, "department_access", AuditOutcome.DENIED,
                        target_department=department,
                        detail=f"user_department={ctx.principal.department} "
                               f"endpoint={ctx.method} {ctx.path} reason={decision.reason.value}")
            return GateResult.deny(403, "forbidden", decision.reason)

        return self._guard("require_department_access", ctx, check)

    def require_clearance(self, level: str) -> Gate:
        def gate(ctx: RequestContext) -> GateResult:
            if ctx.principal is None:
                return UNAUTHENTICATED
            decision = self._evaluate(ctx, Requirement(minimum_clearance=level))
            if decision.allowed:
                return GateResult.allow()
            logger.warning(
                f"Clearance denied: {ctx.principal.username or ctx.principal.user_id} "
                f"holds {ctx.principal.clearance_level}, needs {level}"
            )
            return GateResult.deny(403, "forbidden", decision.reason)
        gate.__name__ = f"require_clearance({level})"
        return gate

    def require_mfa(self, ctx: RequestContext) -> GateResult:
        """Require a second factor on this session.

        Already satisfied sessions pass. Enrolled users may step up inline
        with an X-MFA-Code header (TOTP), an X-MFA-Backup-Code header, or a
        WebAuthn assertion in the JSON body's ``mfa_assertion`` field; on
        success the session is promoted. Users with no enrolled factor get
        mfa_not_enrolled and nothing is changed.
        """
        if ctx.principal is None:
            return UNAUTHENTICATED
        if ctx.principal.mfa_satisfied:
            return GateResult.allow()

        return self._guard("require_mfa", ctx, lambda: self._step_up(ctx))

    def _step_up(self, ctx: RequestContext) -> GateResult:
        principal = ctx.principal
        user = self.bounded.call(self.store.get_user, principal.user_id)
        if user is None or not user.mfa_enrolled:
            return GateResult.deny(403, "mfa_not_enrolled", ErrorCode.MFA_NOT_ENROLLED)

        code = ctx.header(MFA_CODE_HEADER)
        backup_code = ctx.header(MFA_BACKUP_CODE_HEADER)
        assertion = ctx.body.get(MFA_ASSERTION_FIELD) if isinstance(ctx.body, Mapping) else None
        if not (code or backup_code or assertion):
            return GateResult.deny(403, "mfa_required", ErrorCode.MFA_REQUIRED)

        if not self._step_up_limiter.try_acquire(principal.user_id):
            self._audit(ctx, "mfa_step_up", AuditOutcome.DENIED, detail="attempt budget exhausted")
            return GateResult.deny(429, "rate_limited", ErrorCode.MFA_RATE_LIMITED)

        failure = self.verify_step_up(principal, code=code, backup_code=backup_code, assertion=assertion)
        if failure is not None:
            if failure is ErrorCode.CLONE_DETECTED:
                logger.error(f"Possible cloned authenticator for user {principal.user_id}")
            self._audit(ctx, "mfa_step_up", AuditOutcome.FAILURE, detail=f"reason={failure.value}")
            return GateResult.deny(403, "mfa_required", failure)

        if not self.bounded.call(self.store.promote_mfa_satisfied, principal.session_id):
            logger.warning(f"Step-up passed but session {principal.session_id} is no longer live")
            self._audit(ctx, "mfa_step_up", AuditOutcome.FAILURE,
                        detail=f"reason={ErrorCode.REVOKED_TOKEN.value}")
            return GateResult.deny(401, "unauthorized", ErrorCode.REVOKED_TOKEN)
        self._step_up_limiter.reset(principal.user_id)
        ctx.principal = replace(principal, mfa_satisfied=True)
        self._audit(ctx, "mfa_step_up", AuditOutcome.SUCCESS)
        return GateResult.allow()

    # =========================================================================
    # Step-up Verification
    # =========================================================================

    def verify_step_up(
        self,
        principal: Principal,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
        assertion: Optional[dict] = None,
    ) -> Optional[ErrorCode]:
        """Check one inline second factor. WebAuthn wins, then TOTP, then backup code.

        Returns:
            None on success, otherwise the failure reason
        """
        if assertion:
            return self._verify_assertion(principal, assertion)
        if code:
            return self._verify_totp(principal, code)
        if backup_code:
            decision = self.bounded.call(
                self.store.redeem_backup_code, principal.user_id, totp.hash_backup_code(backup_code)
            )
            return None if decision.allowed else decision.reason
        return ErrorCode.MFA_REQUIRED

    def _verify_totp(self, principal: Principal, code: str) -> Optional[ErrorCode]:
        credential = self.bounded.call(self.store.get_totp, principal.user_id)
        if credential is None:
            return ErrorCode.MFA_INVALID_CODE
        secret = self.cipher.decrypt(credential.secret_encrypted)
        if secret is None:
            return ErrorCode.MFA_INVALID_CODE

        step = totp.match_code(
            secret,
            code,
            self.clock.now(),
            period=credential.period,
            digits=credential.digits,
            valid_window=self.settings.mfa.totp_valid_window,
        )
        if step is None:
            return ErrorCode.MFA_INVALID_CODE
        decision = self.bounded.call(self.store.record_totp_step, principal.user_id, step)
        return None if decision.allowed else decision.reason

    def _verify_assertion(self, principal: Principal, assertion: dict) -> Optional[ErrorCode]:
        credential = self.bounded.call(self.store.get_webauthn, principal.user_id)
        if credential is None:
            return ErrorCode.MFA_INVALID_CODE
        challenge = self._take_challenge(principal.session_id)
        if challenge is None:
            return ErrorCode.MFA_INVALID_CODE

        try:
            sign_count = webauthn.verify_assertion(assertion, challenge, credential, self.settings)
        except webauthn.WebAuthnError as e:
            logger.info(f"Step-up assertion rejected for {principal.user_id}: {e.reason}")
            return ErrorCode.MFA_INVALID_CODE

        decision = self.bounded.call(
            self.store.update_sign_count, principal.user_id, credential.credential_id, sign_count
        )
        return None if decision.allowed else decision.reason

    def begin_step_up(self, principal: Principal) -> Optional[dict]:
        """Issue a WebAuthn assertion challenge bound to the principal's session.

        Returns:
            PublicKeyCredentialRequestOptions, or None if the user has no
            WebAuthn credential
        """
        credential = self.bounded.call(self.store.get_webauthn, principal.user_id)
        if credential is None:
            return None
        challenge = webauthn.new_challenge()
        expires = self.clock.now() + timedelta(seconds=self.settings.mfa.step_up_challenge_ttl_seconds)
        with self._challenges_lock:
            self._step_up_challenges[principal.session_id] = (challenge, expires)
        return webauthn.assertion_options(challenge, credential, self.settings)

    def _take_challenge(self, session_id: str) -> Optional[bytes]:
        """Pop the session's pending challenge. Challenges are single use."""
        with self._challenges_lock:
            entry = self._step_up_challenges.pop(session_id, None)
        if entry is None:
            return None
        challenge, expires = entry
        if expires <= self.clock.now():
            return None
        return challenge

    def housekeeping(self, force: bool = False) -> dict[str, int]:
        """Reclaim expired in-memory state.

        Runs at most once per ``mfa.purge_interval_seconds`` unless
        ``force`` is set; a skipped run returns an empty dict.

        Returns:
            Count of items removed, keyed by kind
        """
        now = self.clock.now()
        with self._purge_lock:
            if not force and self._next_purge is not None and now < self._next_purge:
                return {}
            self._next_purge = now + self._purge_interval

        with self._challenges_lock:
            stale = [sid for sid, (_, expires) in self._step_up_challenges.items() if expires <= now]
            for sid in stale:
                del self._step_up_challenges[sid]

        removed = {
            "enrollments": self.enrollment.purge_expired(),
            "challenges": len(stale),
            "limiter_keys": self._step_up_limiter.sweep() + self.enrollment.sweep_limiter(),
        }
        try:
            removed["sessions"] = self.bounded.call(self.store.purge_expired_sessions)
        except InfrastructureError as e:
            logger.error(f"Session purge failed: {type(e).__name__}: {e}")
            removed["sessions"] = 0
        return removed

    # =========================================================================
    # Auditing and Headers
    # =========================================================================

    def audit_sensitive_operation(self, operation: str):
        """Decorator: record exactly one audit entry per request attempt.

        The wrapped handler takes the RequestContext as its first argument.
        The entry is written in a ``finally`` block so handler exceptions
        are audited too; wrappers sharing one request (same attempt id)
        record once.
        """
        def decorator(handler):
            @wraps(handler)
            def wrapped(ctx: RequestContext, *args, **kwargs):
                outcome = AuditOutcome.FAILURE
                try:
                    result = handler(ctx, *args, **kwargs)
                    outcome = _status_outcome(result)
                    return result
                except InfrastructureError:
                    outcome = AuditOutcome.SYSTEM_ERROR
                    raise
                finally:
                    department = ctx.target_department()
                    if department is None and ctx.principal is not None:
                        department = ctx.principal.department
                    self._audit_quietly(ctx, operation, outcome, target_department=department,
                                        detail=f"{ctx.method} {ctx.path}")
            return wrapped
        return decorator

    @staticmethod
    def security_headers(is_secure: bool) -> dict[str, str]:
        return security_headers(is_secure)
