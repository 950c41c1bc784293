"""
Credential store: authentication factors, sessions and the user directory.

CredentialStore is the contract the rest of the package depends on.
InMemoryCredentialStore is the reference implementation used by the app
factory default and by the test suite.

Every operation that reads-then-writes state for a user runs under that
user's lock, so backup code redemption, sign-counter updates and
enrollment commits are atomic per user. Backing-store faults surface as
core.errors.InfrastructureError subclasses; expected business failures
are returned as Decision values.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from core.locks import StripedLock
from core.timestamps import Clock

from .passwords import PasswordPolicy, hash_password, verify_password
from .types import (
    BackupCode,
    Decision,
    ErrorCode,
    SessionRecord,
    TOTPCredential,
    User,
    WebAuthnCredential,
)

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Contract for the per-user factor store, session store and user directory."""

    # -------------------------------------------------------------------------
    # User directory
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def put_user(self, user: User) -> None: ...

    # -------------------------------------------------------------------------
    # Session store
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_session(
        self,
        user_id: str,
        mfa_satisfied: bool = False,
        ttl: Optional[timedelta] = None,
        device_fingerprint: Optional[str] = None,
    ) -> SessionRecord: ...

    @abstractmethod
    def lookup_session(self, session_id: str) -> Optional[SessionRecord]: ...

    @abstractmethod
    def promote_mfa_satisfied(self, session_id: str) -> bool: ...

    @abstractmethod
    def revoke_session(self, session_id: str) -> bool: ...

    def purge_expired_sessions(self) -> int:
        """Drop expired or revoked session records. Stores with their own expiry return 0."""
        return 0

    # -------------------------------------------------------------------------
    # Password verifier
    # -------------------------------------------------------------------------

    @abstractmethod
    def set_password(self, user_id: str, password: str) -> list[str]: ...

    @abstractmethod
    def check_password(self, user_id: str, password: str) -> bool: ...

    # -------------------------------------------------------------------------
    # Second factors
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_totp(self, user_id: str) -> Optional[TOTPCredential]: ...

    @abstractmethod
    def get_webauthn(self, user_id: str) -> Optional[WebAuthnCredential]: ...

    @abstractmethod
    def get_backup_codes(self, user_id: str) -> list[BackupCode]: ...

    @abstractmethod
    def find_credential_owner(self, credential_id: bytes) -> Optional[str]: ...

    @abstractmethod
    def commit_totp_enrollment(
        self, user_id: str, credential: TOTPCredential, backup_code_hashes: list[str]
    ) -> None: ...

    @abstractmethod
    def commit_webauthn_enrollment(
        self, user_id: str, credential: WebAuthnCredential
    ) -> Decision: ...

    @abstractmethod
    def redeem_backup_code(self, user_id: str, code_hash: str) -> Decision: ...

    @abstractmethod
    def record_totp_step(self, user_id: str, step: int) -> Decision: ...

    @abstractmethod
    def update_sign_count(
        self, user_id: str, credential_id: bytes, sign_count: int
    ) -> Decision: ...


class InMemoryCredentialStore(CredentialStore):
    """Process-local store with striped per-user locks.

    Lock order is always user lock, then the credential index lock.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        session_ttl: timedelta = timedelta(hours=12),
        password_policy: Optional[PasswordPolicy] = None,
    ):
        self._clock = clock or Clock()
        self._session_ttl = session_ttl
        self._password_policy = password_policy or PasswordPolicy()

        self._users: dict[str, User] = {}
        self._passwords: dict[str, str] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._totp: dict[str, TOTPCredential] = {}
        self._webauthn: dict[str, WebAuthnCredential] = {}
        self._backup_codes: dict[str, list[BackupCode]] = {}

        # credential_id -> user_id, for collision checks across users
        self._credential_index: dict[bytes, str] = {}
        self._index_lock = threading.Lock()

        self._lock_for = StripedLock()
        self._sessions_lock = threading.Lock()

    # =========================================================================
    # User directory
    # =========================================================================

    def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def put_user(self, user: User) -> None:
        with self._lock_for(user.id):
            self._users[user.id] = user

    # =========================================================================
    # Session store
    # =========================================================================

    def create_session(
        self,
        user_id: str,
        mfa_satisfied: bool = False,
        ttl: Optional[timedelta] = None,
        device_fingerprint: Optional[str] = None,
    ) -> SessionRecord:
        """Create a session record.

        Called by the login flow after it has verified the password and,
        when mfa_satisfied is True, a second factor. A session created with
        a device fingerprint only authenticates requests from that device.
        """
        created = self._clock.now()
        record = SessionRecord(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            mfa_satisfied=mfa_satisfied,
            created_at=created,
            expires_at=created + (ttl or self._session_ttl),
            device_fingerprint=device_fingerprint,
        )
        with self._sessions_lock:
            self._sessions[record.session_id] = record
        return record

    def lookup_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._sessions_lock:
            return self._sessions.get(session_id)

    def promote_mfa_satisfied(self, session_id: str) -> bool:
        """Mark a live session as having passed a second factor.

        Returns:
            False if the session is unknown or revoked
        """
        with self._sessions_lock:
            record = self._sessions.get(session_id)
            if record is None or record.revoked:
                return False
            self._sessions[session_id] = replace(record, mfa_satisfied=True)
            return True

    def revoke_session(self, session_id: str) -> bool:
        with self._sessions_lock:
            record = self._sessions.get(session_id)
            if record is None:
                return False
            self._sessions[session_id] = replace(record, revoked=True)
            return True

    def purge_expired_sessions(self) -> int:
        now = self._clock.now()
        with self._sessions_lock:
            stale = [sid for sid, record in self._sessions.items()
                     if record.revoked or record.expires_at <= now]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug(f"Purged {len(stale)} expired sessions")
        return len(stale)

    # =========================================================================
    # Password verifier
    # =========================================================================

    def set_password(self, user_id: str, password: str) -> list[str]:
        """Store a verifier for ``password`` if it meets the password policy.

        Returns:
            Policy violations; empty when the password was stored
        """
        errors = self._password_policy.violations(password)
        if errors:
            return errors
        with self._lock_for(user_id):
            self._passwords[user_id] = hash_password(password)
        return []

    def check_password(self, user_id: str, password: str) -> bool:
        return verify_password(password, self._passwords.get(user_id, ""))

    # =========================================================================
    # Second factors
    # =========================================================================

    def get_totp(self, user_id: str) -> Optional[TOTPCredential]:
        return self._totp.get(user_id)

    def get_webauthn(self, user_id: str) -> Optional[WebAuthnCredential]:
        return self._webauthn.get(user_id)

    def get_backup_codes(self, user_id: str) -> list[BackupCode]:
        return list(self._backup_codes.get(user_id, []))

    def find_credential_owner(self, credential_id: bytes) -> Optional[str]:
        with self._index_lock:
            return self._credential_index.get(credential_id)

    def commit_totp_enrollment(
        self, user_id: str, credential: TOTPCredential, backup_code_hashes: list[str]
    ) -> None:
        """Install a TOTP credential and a fresh backup code set in one step.

        Any previous TOTP credential and every previous backup code are
        replaced. The user is marked MFA-enrolled.
        """
        with self._lock_for(user_id):
            user = self._users.get(user_id)
            if user is None:
                raise KeyError(user_id)
            issued = self._clock.now()
            codes = [BackupCode(code_hash=h, issued_at=issued) for h in backup_code_hashes]

            self._totp[user_id] = credential
            self._backup_codes[user_id] = codes
            self._users[user_id] = replace(user, mfa_enrolled=True)

        logger.info(f"TOTP enrollment committed for user {user_id} ({len(codes)} backup codes)")

    def commit_webauthn_enrollment(
        self, user_id: str, credential: WebAuthnCredential
    ) -> Decision:
        """Install a WebAuthn credential and mark the user MFA-enrolled.

        Returns:
            Deny(ENROLLMENT_CONFLICT) if another user already owns the
            credential id; nothing is written in that case.
        """
        with self._lock_for(user_id):
            user = self._users.get(user_id)
            if user is None:
                raise KeyError(user_id)

            with self._index_lock:
                owner = self._credential_index.get(credential.credential_id)
                if owner is not None and owner != user_id:
                    return Decision.deny(ErrorCode.ENROLLMENT_CONFLICT)

                previous = self._webauthn.get(user_id)
                if previous is not None:
                    self._credential_index.pop(previous.credential_id, None)
                self._credential_index[credential.credential_id] = user_id

            self._webauthn[user_id] = credential
            self._users[user_id] = replace(user, mfa_enrolled=True)

        logger.info(f"WebAuthn enrollment committed for user {user_id}")
        return Decision.allow()

    def redeem_backup_code(self, user_id: str, code_hash: str) -> Decision:
        """Consume a backup code. At most one concurrent redemption succeeds.

        Returns:
            Allow on first use, Deny(BACKUP_CODE_ALREADY_USED) on reuse,
            Deny(MFA_INVALID_CODE) if the hash matches no issued code
        """
        with self._lock_for(user_id):
            codes = self._backup_codes.get(user_id, [])
            for index, code in enumerate(codes):
                if code.code_hash != code_hash:
                    continue
                if code.used:
                    return Decision.deny(ErrorCode.BACKUP_CODE_ALREADY_USED)
                codes[index] = replace(code, used=True, used_at=self._clock.now())
                return Decision.allow()
        return Decision.deny(ErrorCode.MFA_INVALID_CODE)

    def record_totp_step(self, user_id: str, step: int) -> Decision:
        """Advance the last accepted TOTP time step.

        Returns:
            Deny(MFA_INVALID_CODE) if ``step`` is not newer than the last
            accepted one (a replayed code)
        """
        with self._lock_for(user_id):
            credential = self._totp.get(user_id)
            if credential is None:
                return Decision.deny(ErrorCode.MFA_NOT_ENROLLED)
            if credential.last_used_step is not None and step <= credential.last_used_step:
                return Decision.deny(ErrorCode.MFA_INVALID_CODE)
            self._totp[user_id] = replace(credential, last_used_step=step)
            return Decision.allow()

    def update_sign_count(
        self, user_id: str, credential_id: bytes, sign_count: int
    ) -> Decision:
        """Compare-and-swap the authenticator signature counter.

        Returns:
            Deny(CLONE_DETECTED) if ``sign_count`` is lower than the stored
            value; the stored value is left unchanged
        """
        with self._lock_for(user_id):
            credential = self._webauthn.get(user_id)
            if credential is None or credential.credential_id != credential_id:
                return Decision.deny(ErrorCode.MFA_INVALID_CODE)
            if sign_count < credential.sign_count:
                logger.warning(
                    f"Sign counter regression for user {user_id}: "
                    f"stored={credential.sign_count} presented={sign_count}"
                )
                return Decision.deny(ErrorCode.CLONE_DETECTED)
            self._webauthn[user_id] = credential.with_sign_count(sign_count)
            return Decision.allow()
