"""
Bearer token -> Principal resolution.

The gateway only reads. It never extends a session, never refreshes a
token and never recomputes MFA status; ``mfa_satisfied`` comes from the
session record (and is only honoured while the user is still enrolled).
"""
import hmac
import logging
from typing import Optional, Union

import jwt

from config.settings import AppSettings
from core.timestamps import Clock

from .store import CredentialStore
from .tokens import decode_token
from .types import AuthFailure, ErrorCode, Principal

logger = logging.getLogger(__name__)


class AuthenticationGateway:
    """Validates inbound bearer tokens against the session store and user directory."""

    def __init__(self, store: CredentialStore, settings: AppSettings, clock: Optional[Clock] = None):
        self._store = store
        self._settings = settings
        self._clock = clock or Clock()

    def authenticate(
        self, token: Optional[str], fingerprint: Optional[str] = None
    ) -> Union[Principal, AuthFailure]:
        """Resolve a bearer token to a Principal.

        Args:
            token: Raw token from the Authorization header
            fingerprint: Device fingerprint of the presenting client; checked
                against the session's when the session is bound to one

        Returns:
            Principal on success, otherwise AuthFailure with INVALID_TOKEN,
            EXPIRED_TOKEN or REVOKED_TOKEN

        Raises:
            InfrastructureError: the store could not be read
        """
        if not token:
            return AuthFailure(ErrorCode.INVALID_TOKEN)

        try:
            payload = decode_token(token, self._settings)
        except jwt.ExpiredSignatureError:
            return AuthFailure(ErrorCode.EXPIRED_TOKEN)
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected bearer token: {e}")
            return AuthFailure(ErrorCode.INVALID_TOKEN)

        session = self._store.lookup_session(payload["sid"])
        if session is None or session.revoked:
            return AuthFailure(ErrorCode.REVOKED_TOKEN)
        if session.user_id != payload["sub"]:
            logger.warning(f"Token subject does not match session {session.session_id}")
            return AuthFailure(ErrorCode.INVALID_TOKEN)
        if session.expires_at <= self._clock.now():
            return AuthFailure(ErrorCode.EXPIRED_TOKEN)
        if not self._fingerprint_matches(session, fingerprint):
            logger.warning(f"Session {session.session_id} presented from a different device")
            return AuthFailure(ErrorCode.INVALID_TOKEN)

        user = self._store.get_user(session.user_id)
        if user is None or not user.is_active:
            return AuthFailure(ErrorCode.REVOKED_TOKEN)

        return Principal(
            user_id=user.id,
            roles=frozenset(user.roles),
            department=user.department,
            clearance_level=user.clearance_level,
            mfa_satisfied=session.mfa_satisfied and user.mfa_enrolled,
            session_id=session.session_id,
            username=user.username,
        )

    def _fingerprint_matches(self, session, fingerprint: Optional[str]) -> bool:
        if not self._settings.auth.bind_session_fingerprint or session.device_fingerprint is None:
            return True
        if fingerprint is None:
            return False
        return hmac.compare_digest(session.device_fingerprint, fingerprint)

