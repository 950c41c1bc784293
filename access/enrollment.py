"""
MFA enrollment state machine.

    choose_method -> setup_totp -> verify_totp -> backup_codes_issued -> complete
    choose_method -> setup_webauthn -> complete
    any state -> abandoned (cancel, TTL expiry, verification budget exhausted)

The server holds the enrollment session; clients only ever see its state
and the minimal payload for the current step. Nothing reaches the
credential store until the final commit, which replaces any previous
factor of the same kind in one store operation.

Each user has at most one live enrollment session. All transitions for a
user run under that user's lock, so concurrent requests see a
compare-and-swap on the session state. A transition writes its audit
entry before it changes the session; if the entry cannot be written the
session is left as it was.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from config.settings import AppSettings
from core.audit import AuditOutcome, AuditRecorder
from core.bounded import BoundedExecutor
from core.errors import InfrastructureError
from core.locks import StripedLock
from core.timestamps import Clock

from . import totp, webauthn
from .ratelimit import SlidingWindowLimiter
from .store import CredentialStore
from .types import ErrorCode, MFAMethod, TOTPCredential

logger = logging.getLogger(__name__)


class EnrollmentState(str, Enum):
    CHOOSE_METHOD = "choose_method"
    SETUP_WEBAUTHN = "setup_webauthn"
    SETUP_TOTP = "setup_totp"
    VERIFY_TOTP = "verify_totp"
    BACKUP_CODES_ISSUED = "backup_codes_issued"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


@dataclass
class EnrollmentSession:
    """Server-held enrollment progress. Mutated only under the user's lock."""
    enrollment_id: str
    user_id: str
    method: MFAMethod
    state: EnrollmentState
    created_at: datetime
    expires_at: datetime
    challenge: Optional[bytes] = None
    secret: Optional[str] = None
    backup_code_hashes: list[str] = field(default_factory=list)
    verified_step: Optional[int] = None


@dataclass(frozen=True)
class EnrollmentResult:
    """Outcome of a coordinator call.

    ``error`` is None on success. ``reason`` is internal detail for logs
    and audit (e.g. why a WebAuthn registration was rejected) and is not
    returned to clients.
    """
    state: EnrollmentState
    error: Optional[ErrorCode] = None
    data: dict = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"state": self.state.value}
        if self.error is not None:
            body["error"] = self.error.value
        body.update(self.data)
        return body


class MFAEnrollmentCoordinator:
    """Drives WebAuthn and TOTP enrollment for authenticated users."""

    def __init__(
        self,
        store: CredentialStore,
        recorder: AuditRecorder,
        settings: AppSettings,
        clock: Optional[Clock] = None,
        bounded: Optional[BoundedExecutor] = None,
        cipher: Optional[totp.SecretCipher] = None,
    ):
        self._store = store
        self._recorder = recorder
        self._settings = settings
        self._clock = clock or Clock()
        self._bounded = bounded or BoundedExecutor(timeout=0)
        self._cipher = cipher or totp.SecretCipher(settings)

        self._ttl = timedelta(minutes=settings.mfa.enrollment_ttl_minutes)
        self._verify_limiter = SlidingWindowLimiter(
            settings.mfa.verify_max_attempts,
            timedelta(minutes=settings.mfa.verify_window_minutes),
            self._clock,
        )

        self._sessions: dict[str, EnrollmentSession] = {}
        self._lock_for = StripedLock()

    # =========================================================================
    # Internals
    # =========================================================================

    def _store_call(self, method: str, *args, **kwargs):
        return self._bounded.call(getattr(self._store, method), *args, **kwargs)

    def _audit(self, user_id: str, operation: str, outcome: AuditOutcome,
               detail: Optional[str] = None, attempt_id: Optional[str] = None,
               request_id: Optional[str] = None) -> None:
        self._bounded.call(
            self._recorder.record,
            user_id,
            f"mfa_enrollment_{operation}",
            outcome,
            detail=detail,
            attempt_id=attempt_id,
            request_id=request_id,
        )

    def _audit_quietly(self, user_id: str, operation: str, outcome: AuditOutcome,
                       detail: Optional[str] = None, attempt_id: Optional[str] = None,
                       request_id: Optional[str] = None) -> None:
        """Audit a change that has already happened. Sink failures are logged, not raised."""
        try:
            self._audit(user_id, operation, outcome, detail, attempt_id, request_id)
        except InfrastructureError as e:
            logger.error(f"Audit entry mfa_enrollment_{operation} for {user_id} lost: "
                         f"{type(e).__name__}: {e}")

    def _resolve(self, user_id: str, attempt_id: Optional[str] = None,
                 request_id: Optional[str] = None) -> tuple[Optional[EnrollmentSession], bool]:
        """Return (live session, expired flag). Caller holds the user's lock.

        An expired session is reclaimed here and reported once as expired.
        """
        session = self._sessions.get(user_id)
        if session is None:
            return None, False
        if session.expires_at <= self._clock.now():
            self._discard(session)
            self._audit_quietly(user_id, "expired", AuditOutcome.FAILURE,
                                detail=f"method={session.method.value} state={session.state.value}",
                                attempt_id=attempt_id, request_id=request_id)
            return None, True
        return session, False

    def _discard(self, session: EnrollmentSession) -> None:
        self._sessions.pop(session.user_id, None)
        self._verify_limiter.reset(session.enrollment_id)

    def _missing(self, expired: bool) -> EnrollmentResult:
        if expired:
            return EnrollmentResult(EnrollmentState.ABANDONED, ErrorCode.ENROLLMENT_EXPIRED)
        return EnrollmentResult(EnrollmentState.CHOOSE_METHOD, ErrorCode.ENROLLMENT_INVALID_STATE)

    def _promote(self, user_id: str, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        record = self._store_call("lookup_session", session_id)
        if record is None or record.user_id != user_id:
            logger.warning(f"Not promoting session {session_id}: not owned by {user_id}")
            return False
        return self._store_call("promote_mfa_satisfied", session_id)

    # =========================================================================
    # Transitions
    # =========================================================================

    def start_enrollment(self, user_id: str, method: Union[MFAMethod, str],
                         attempt_id: Optional[str] = None,
                         request_id: Optional[str] = None) -> EnrollmentResult:
        """Begin enrollment, superseding any session already in progress.

        Args:
            user_id: Enrolling user
            method: "totp" or "webauthn"
            attempt_id: Request attempt id for audit de-duplication
            request_id: Caller correlation id, recorded with the audit entry

        Returns:
            setup_totp with secret, provisioning_uri and qr_code, or
            setup_webauthn with the registration options
        """
        try:
            method = MFAMethod(method)
        except ValueError:
            return EnrollmentResult(EnrollmentState.CHOOSE_METHOD, ErrorCode.ENROLLMENT_FAILED,
                                    reason=f"unsupported method {method!r}")

        if not self._settings.mfa.enabled:
            return EnrollmentResult(EnrollmentState.CHOOSE_METHOD, ErrorCode.ENROLLMENT_FAILED,
                                    reason="mfa disabled")

        user = self._store_call("get_user", user_id)
        if user is None or not user.is_active:
            return EnrollmentResult(EnrollmentState.CHOOSE_METHOD, ErrorCode.ENROLLMENT_FAILED,
                                    reason="unknown or inactive user")

        with self._lock_for(user_id):
            now = self._clock.now()
            session = EnrollmentSession(
                enrollment_id=uuid.uuid4().hex,
                user_id=user_id,
                method=method,
                state=EnrollmentState.SETUP_TOTP,
                created_at=now,
                expires_at=now + self._ttl,
            )

            if method is MFAMethod.TOTP:
                session.secret = totp.generate_secret()
                uri = totp.provisioning_uri(session.secret, user.username or user.id, self._settings)
                data = {
                    "secret": session.secret,
                    "provisioning_uri": uri,
                    "qr_code": totp.qr_code_data_uri(uri),
                }
            else:
                session.state = EnrollmentState.SETUP_WEBAUTHN
                session.challenge = webauthn.new_challenge()
                existing = self._store_call("get_webauthn", user_id)
                options = webauthn.registration_options(
                    session.challenge, user.id, user.username or user.id, self._settings, existing
                )
                data = {"challenge": options["challenge"], "options": options}

            previous = self._sessions.get(user_id)
            self._audit(user_id, "start", AuditOutcome.SUCCESS,
                        detail=f"method={method.value} superseded={previous is not None}",
                        attempt_id=attempt_id, request_id=request_id)

            if previous is not None:
                self._discard(previous)
                logger.info(f"Enrollment {previous.enrollment_id} for {user_id} superseded")
            self._sessions[user_id] = session

        data["expires_at"] = session.expires_at.isoformat()
        return EnrollmentResult(session.state, data=data)

    def acknowledge_secret(self, user_id: str, attempt_id: Optional[str] = None,
                           request_id: Optional[str] = None) -> EnrollmentResult:
        """setup_totp -> verify_totp once the client confirms it stored the secret."""
        with self._lock_for(user_id):
            session, expired = self._resolve(user_id, attempt_id, request_id)
            if session is None:
                return self._missing(expired)

            if session.state is EnrollmentState.VERIFY_TOTP:
                return EnrollmentResult(session.state)
            if session.state is not EnrollmentState.SETUP_TOTP:
                return EnrollmentResult(session.state, ErrorCode.ENROLLMENT_INVALID_STATE)

            self._audit(user_id, "acknowledge", AuditOutcome.SUCCESS,
                        attempt_id=attempt_id, request_id=request_id)
            session.state = EnrollmentState.VERIFY_TOTP
            return EnrollmentResult(session.state)

    def verify_totp(self, user_id: str, code: str, attempt_id: Optional[str] = None,
                    request_id: Optional[str] = None) -> EnrollmentResult:
        """verify_totp -> backup_codes_issued on a matching code.

        A code submitted in setup_totp counts as acknowledgement. Mismatches
        stay in verify_totp; the attempt that uses up the verification
        budget abandons the session.

        Returns:
            backup_codes_issued with the plaintext backup codes (shown once),
            or a failure with MFA_INVALID_CODE / MFA_RATE_LIMITED
        """
        with self._lock_for(user_id):
            session, expired = self._resolve(user_id, attempt_id, request_id)
            if session is None:
                return self._missing(expired)

            if session.state not in (EnrollmentState.SETUP_TOTP, EnrollmentState.VERIFY_TOTP):
                return EnrollmentResult(session.state, ErrorCode.ENROLLMENT_INVALID_STATE)

            mfa = self._settings.mfa
            step = totp.match_code(
                session.secret,
                code,
                self._clock.now(),
                period=mfa.totp_period,
                digits=mfa.totp_digits,
                valid_window=mfa.totp_valid_window,
            )

            if step is None:
                failures = self._verify_limiter.record_failure(session.enrollment_id)
                if failures >= mfa.verify_max_attempts:
                    self._discard(session)
                    self._audit_quietly(user_id, "abandoned", AuditOutcome.FAILURE,
                                        detail="verification attempts exhausted",
                                        attempt_id=attempt_id, request_id=request_id)
                    return EnrollmentResult(EnrollmentState.ABANDONED, ErrorCode.MFA_RATE_LIMITED)

                self._audit(user_id, "verify", AuditOutcome.FAILURE,
                            detail=f"attempt {failures} of {mfa.verify_max_attempts}",
                            attempt_id=attempt_id, request_id=request_id)
                session.state = EnrollmentState.VERIFY_TOTP
                return EnrollmentResult(
                    session.state,
                    ErrorCode.MFA_INVALID_CODE,
                    data={"attempts_remaining": mfa.verify_max_attempts - failures},
                )

            codes = totp.generate_backup_codes(mfa.backup_code_count)
            self._audit(user_id, "verify", AuditOutcome.SUCCESS,
                        detail=f"{len(codes)} backup codes issued",
                        attempt_id=attempt_id, request_id=request_id)

            session.backup_code_hashes = [totp.hash_backup_code(c) for c in codes]
            session.verified_step = step
            session.state = EnrollmentState.BACKUP_CODES_ISSUED
            self._verify_limiter.reset(session.enrollment_id)
            return EnrollmentResult(session.state, data={"backup_codes": codes})

    def commit_enrollment(self, user_id: str, session_id: Optional[str] = None,
                          attempt_id: Optional[str] = None,
                          request_id: Optional[str] = None) -> EnrollmentResult:
        """backup_codes_issued -> complete.

        Stores the TOTP credential, the backup code hashes and the enrolled
        flag in a single store operation. If ``session_id`` names one of the
        user's sessions it is promoted to MFA-satisfied. The store commit is
        the point of no return: an audit sink failure after it is logged and
        the enrollment still completes.
        """
        with self._lock_for(user_id):
            session, expired = self._resolve(user_id, attempt_id, request_id)
            if session is None:
                return self._missing(expired)
            if session.state is not EnrollmentState.BACKUP_CODES_ISSUED:
                return EnrollmentResult(session.state, ErrorCode.ENROLLMENT_INVALID_STATE)

            mfa = self._settings.mfa
            credential = TOTPCredential(
                secret_encrypted=self._cipher.encrypt(session.secret),
                created_at=self._clock.now(),
                period=mfa.totp_period,
                digits=mfa.totp_digits,
                last_used_step=session.verified_step,
            )
            self._store_call("commit_totp_enrollment", user_id, credential, list(session.backup_code_hashes))

            self._discard(session)
            self._audit_quietly(user_id, "complete", AuditOutcome.SUCCESS, detail="method=totp",
                                attempt_id=attempt_id, request_id=request_id)

        promoted = self._promote(user_id, session_id)
        return EnrollmentResult(EnrollmentState.COMPLETE, data={"mfa_satisfied": promoted})

    def complete_webauthn(self, user_id: str, registration: dict, session_id: Optional[str] = None,
                          attempt_id: Optional[str] = None,
                          request_id: Optional[str] = None) -> EnrollmentResult:
        """setup_webauthn -> complete after verifying the registration response.

        Any verification failure or credential id collision leaves the
        session in setup_webauthn with nothing written.
        """
        with self._lock_for(user_id):
            session, expired = self._resolve(user_id, attempt_id, request_id)
            if session is None:
                return self._missing(expired)
            if session.state is not EnrollmentState.SETUP_WEBAUTHN:
                return EnrollmentResult(session.state, ErrorCode.ENROLLMENT_INVALID_STATE)

            try:
                credential = webauthn.verify_registration(
                    registration, session.challenge, self._settings, self._clock.now()
                )
            except webauthn.WebAuthnError as e:
                self._audit(user_id, "webauthn_verify", AuditOutcome.FAILURE,
                            detail=e.reason, attempt_id=attempt_id, request_id=request_id)
                return EnrollmentResult(session.state, ErrorCode.ENROLLMENT_FAILED, reason=e.reason)

            owner = self._store_call("find_credential_owner", credential.credential_id)
            conflict = owner is not None and owner != user_id
            if not conflict:
                # The store re-checks ownership under its own lock
                decision = self._store_call("commit_webauthn_enrollment", user_id, credential)
                conflict = not decision.allowed

            if conflict:
                reason = "credential id registered to another user"
                self._audit(user_id, "webauthn_verify", AuditOutcome.FAILURE,
                            detail=reason, attempt_id=attempt_id, request_id=request_id)
                return EnrollmentResult(session.state, ErrorCode.ENROLLMENT_CONFLICT, reason=reason)

            self._discard(session)
            self._audit_quietly(user_id, "complete", AuditOutcome.SUCCESS, detail="method=webauthn",
                                attempt_id=attempt_id, request_id=request_id)

        promoted = self._promote(user_id, session_id)
        return EnrollmentResult(EnrollmentState.COMPLETE, data={"mfa_satisfied": promoted})

    def cancel_enrollment(self, user_id: str, attempt_id: Optional[str] = None,
                          request_id: Optional[str] = None) -> EnrollmentResult:
        """Any state -> abandoned. Idempotent."""
        with self._lock_for(user_id):
            session = self._sessions.get(user_id)
            if session is not None:
                self._audit(user_id, "cancel", AuditOutcome.SUCCESS,
                            detail=f"state={session.state.value}",
                            attempt_id=attempt_id, request_id=request_id)
                self._discard(session)
        return EnrollmentResult(EnrollmentState.ABANDONED)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_state(self, user_id: str) -> EnrollmentState:
        """Current state. Expired sessions report abandoned and are reclaimed."""
        with self._lock_for(user_id):
            session, expired = self._resolve(user_id)
            if session is not None:
                return session.state
            return EnrollmentState.ABANDONED if expired else EnrollmentState.CHOOSE_METHOD

    def describe(self, user_id: str) -> dict:
        """Client-safe view of the current enrollment. Never includes secrets."""
        with self._lock_for(user_id):
            session, expired = self._resolve(user_id)
            if session is None:
                state = EnrollmentState.ABANDONED if expired else EnrollmentState.CHOOSE_METHOD
                return {"state": state.value}
            return {
                "state": session.state.value,
                "method": session.method.value,
                "expires_at": session.expires_at.isoformat(),
            }

    def purge_expired(self) -> int:
        """Reclaim every expired session.

        Returns:
            Number of sessions reclaimed
        """
        reclaimed = 0
        for user_id in list(self._sessions):
            with self._lock_for(user_id):
                _, expired = self._resolve(user_id)
                if expired:
                    reclaimed += 1
        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} expired enrollment sessions")
        return reclaimed

    def sweep_limiter(self) -> int:
        """Drop verification limiter keys with no attempts left in the window."""
        return self._verify_limiter.sweep()
