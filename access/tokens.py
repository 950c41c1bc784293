"""
Bearer token creation, decoding and header extraction.

Tokens are HS256 JWTs that name a session (``sid``) and its owner
(``sub``). Everything about the session beyond that (revocation, MFA
status, expiry) is read from the session store on every request.
"""
import uuid
from typing import Optional

import jwt

from config.settings import AppSettings

from .types import SessionRecord

TOKEN_TYPE = "access"


# =============================================================================
# Token Creation
# =============================================================================

def create_token(session: SessionRecord, settings: AppSettings) -> str:
    """Create a bearer token bound to a session record.

    The token expires with the session; it is never refreshed here.

    Args:
        session: Session the token represents
        settings: Application settings (JWT secret and algorithm)

    Returns:
        Encoded JWT
    """
    payload = {
        "sub": session.user_id,
        "sid": session.session_id,
        "jti": str(uuid.uuid4()),
        "type": TOKEN_TYPE,
        "iat": session.created_at,
        "exp": session.expires_at,
    }
    return jwt.encode(
        payload,
        settings.auth.jwt_secret.get_secret_value(),
        algorithm=settings.auth.jwt_algorithm,
    )


# =============================================================================
# Token Decoding/Validation
# =============================================================================

def decode_token(token: str, settings: AppSettings) -> dict:
    """Decode and validate a bearer token.

    Args:
        token: Encoded JWT
        settings: Application settings (JWT secret and algorithm)

    Returns:
        Token payload dict

    Raises:
        jwt.ExpiredSignatureError: token ``exp`` has passed
        jwt.InvalidTokenError: bad signature, malformed token, missing claims
            or a token of another type
    """
    payload = jwt.decode(
        token,
        settings.auth.jwt_secret.get_secret_value(),
        algorithms=[settings.auth.jwt_algorithm],
        options={"require": ["exp", "sub", "sid"]},
    )
    if payload.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError("Unexpected token type")
    return payload


def extract_bearer(auth_header: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Returns:
        Token string or None if not present
    """
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None
