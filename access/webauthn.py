"""
WebAuthn relying-party ceremonies.

Handles:
- Registration options (PublicKeyCredentialCreationOptions as JSON)
- Registration response verification
- Assertion options and assertion verification for step-up

Clients send the JSON form of the browser credential. For registration
the response must carry ``authenticatorData``, ``publicKey`` (DER
SubjectPublicKeyInfo, as returned by ``getPublicKey()``) and
``publicKeyAlgorithm`` alongside ``clientDataJSON``. Attestation
statements are not verified (attestation "none").
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from config.settings import AppSettings

from .types import WebAuthnCredential

logger = logging.getLogger(__name__)

# COSE algorithm identifiers
ALG_ES256 = -7
ALG_EDDSA = -8
ALG_RS256 = -257
SUPPORTED_ALGORITHMS = (ALG_ES256, ALG_EDDSA, ALG_RS256)

# Authenticator data flags
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_DATA = 0x40

CHALLENGE_BYTES = 32


class WebAuthnError(Exception):
    """A ceremony response failed verification. ``reason`` is log-safe."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# =============================================================================
# Encoding Helpers
# =============================================================================

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    if not isinstance(value, str):
        raise WebAuthnError("expected base64url string")
    try:
        return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, ValueError):
        raise WebAuthnError("malformed base64url value")


def new_challenge() -> bytes:
    return os.urandom(CHALLENGE_BYTES)


# =============================================================================
# Authenticator Data
# =============================================================================

@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    credential_id: Optional[bytes] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def has_attested_data(self) -> bool:
        return bool(self.flags & FLAG_ATTESTED_DATA)


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    """Parse the fixed header and, when flagged, the attested credential id.

    Layout: rpIdHash(32) | flags(1) | signCount(4, big-endian) |
    [aaguid(16) | credIdLen(2) | credId(credIdLen) | COSE key ...]
    """
    if len(raw) < 37:
        raise WebAuthnError("authenticator data too short")

    rp_id_hash = raw[:32]
    flags = raw[32]
    sign_count = int.from_bytes(raw[33:37], "big")

    credential_id = None
    if flags & FLAG_ATTESTED_DATA:
        if len(raw) < 55:
            raise WebAuthnError("attested credential data truncated")
        id_length = int.from_bytes(raw[53:55], "big")
        credential_id = raw[55:55 + id_length]
        if len(credential_id) != id_length:
            raise WebAuthnError("attested credential id truncated")

    return AuthenticatorData(rp_id_hash, flags, sign_count, credential_id)


def _parse_client_data(raw: bytes) -> dict:
    try:
        client_data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise WebAuthnError("clientDataJSON is not valid JSON")
    if not isinstance(client_data, dict):
        raise WebAuthnError("clientDataJSON is not an object")
    return client_data


def _check_client_data(client_data: dict, expected_type: str, challenge: bytes, settings: AppSettings):
    if client_data.get("type") != expected_type:
        raise WebAuthnError(f"unexpected client data type {client_data.get('type')!r}")
    presented = b64url_decode(client_data.get("challenge", ""))
    if not hmac.compare_digest(presented, challenge):
        raise WebAuthnError("challenge mismatch")
    if client_data.get("origin") != settings.webauthn.origin:
        raise WebAuthnError(f"origin mismatch: {client_data.get('origin')!r}")


def _check_rp_id_hash(auth_data: AuthenticatorData, settings: AppSettings):
    expected = hashlib.sha256(settings.webauthn.rp_id.encode("utf-8")).digest()
    if not hmac.compare_digest(auth_data.rp_id_hash, expected):
        raise WebAuthnError("rp id hash mismatch")
    if not auth_data.user_present:
        raise WebAuthnError("user presence flag not set")


def _response_field(payload: dict, name: str) -> bytes:
    response = payload.get("response")
    if not isinstance(response, dict) or name not in response:
        raise WebAuthnError(f"missing response.{name}")
    return b64url_decode(response[name])


def _raw_id(payload: dict) -> bytes:
    return b64url_decode(payload.get("rawId") or payload.get("id") or "")


# =============================================================================
# Public Keys
# =============================================================================

def load_public_key(der: bytes, algorithm: int):
    """Load a DER SPKI public key and check it matches the COSE algorithm."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise WebAuthnError(f"unsupported algorithm {algorithm}")
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm):
        raise WebAuthnError("public key is not valid DER SPKI")

    if algorithm == ALG_ES256:
        if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(key.curve, ec.SECP256R1):
            raise WebAuthnError("ES256 requires a P-256 key")
    elif algorithm == ALG_EDDSA:
        if not isinstance(key, ed25519.Ed25519PublicKey):
            raise WebAuthnError("EdDSA requires an Ed25519 key")
    elif algorithm == ALG_RS256:
        if not isinstance(key, rsa.RSAPublicKey):
            raise WebAuthnError("RS256 requires an RSA key")
    return key


def _verify_signature(key, algorithm: int, signature: bytes, data: bytes):
    try:
        if algorithm == ALG_ES256:
            key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        elif algorithm == ALG_EDDSA:
            key.verify(signature, data)
        else:
            key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        raise WebAuthnError("signature verification failed")


# =============================================================================
# Registration
# =============================================================================

def registration_options(
    challenge: bytes,
    user_id: str,
    username: str,
    settings: AppSettings,
    existing: Optional[WebAuthnCredential] = None,
) -> dict:
    """Build PublicKeyCredentialCreationOptions for the browser."""
    options = {
        "challenge": b64url_encode(challenge),
        "rp": {"id": settings.webauthn.rp_id, "name": settings.webauthn.rp_name},
        "user": {
            "id": b64url_encode(user_id.encode("utf-8")),
            "name": username,
            "displayName": username,
        },
        "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS],
        "timeout": settings.webauthn.timeout_ms,
        "attestation": "none",
        "authenticatorSelection": {"userVerification": "preferred"},
        "excludeCredentials": [],
    }
    if existing is not None:
        options["excludeCredentials"].append(
            {"type": "public-key", "id": b64url_encode(existing.credential_id)}
        )
    return options


def verify_registration(
    payload: dict,
    challenge: bytes,
    settings: AppSettings,
    created_at: datetime,
) -> WebAuthnCredential:
    """Verify a registration response against the issued challenge.

    Args:
        payload: Credential JSON from the browser
        challenge: Challenge issued by registration_options
        settings: Relying party settings
        created_at: Timestamp recorded on the new credential

    Returns:
        The verified credential, ready to commit

    Raises:
        WebAuthnError: any check failed
    """
    if not isinstance(payload, dict):
        raise WebAuthnError("credential must be an object")
    if payload.get("type", "public-key") != "public-key":
        raise WebAuthnError("credential type must be public-key")

    client_data = _parse_client_data(_response_field(payload, "clientDataJSON"))
    _check_client_data(client_data, "webauthn.create", challenge, settings)

    auth_data = parse_authenticator_data(_response_field(payload, "authenticatorData"))
    _check_rp_id_hash(auth_data, settings)
    if not auth_data.has_attested_data:
        raise WebAuthnError("attested credential data flag not set")

    credential_id = _raw_id(payload)
    if not credential_id or auth_data.credential_id != credential_id:
        raise WebAuthnError("credential id does not match attested data")

    response = payload["response"]
    algorithm = response.get("publicKeyAlgorithm")
    if not isinstance(algorithm, int):
        raise WebAuthnError("missing response.publicKeyAlgorithm")
    public_key = _response_field(payload, "publicKey")
    load_public_key(public_key, algorithm)

    return WebAuthnCredential(
        credential_id=credential_id,
        public_key=public_key,
        algorithm=algorithm,
        sign_count=auth_data.sign_count,
        created_at=created_at,
    )


# =============================================================================
# Assertion (step-up)
# =============================================================================

def assertion_options(challenge: bytes, credential: WebAuthnCredential, settings: AppSettings) -> dict:
    """Build PublicKeyCredentialRequestOptions for the browser."""
    return {
        "challenge": b64url_encode(challenge),
        "rpId": settings.webauthn.rp_id,
        "allowCredentials": [
            {"type": "public-key", "id": b64url_encode(credential.credential_id)}
        ],
        "timeout": settings.webauthn.timeout_ms,
        "userVerification": "preferred",
    }


def verify_assertion(
    payload: dict,
    challenge: bytes,
    credential: WebAuthnCredential,
    settings: AppSettings,
) -> int:
    """Verify an assertion against a stored credential.

    The signature counter is returned, not checked; callers must
    compare-and-swap it through the credential store.

    Returns:
        The authenticator's reported signature counter

    Raises:
        WebAuthnError: any check failed
    """
    if not isinstance(payload, dict):
        raise WebAuthnError("assertion must be an object")
    if _raw_id(payload) != credential.credential_id:
        raise WebAuthnError("unknown credential id")

    client_data_raw = _response_field(payload, "clientDataJSON")
    client_data = _parse_client_data(client_data_raw)
    _check_client_data(client_data, "webauthn.get", challenge, settings)

    auth_data_raw = _response_field(payload, "authenticatorData")
    auth_data = parse_authenticator_data(auth_data_raw)
    _check_rp_id_hash(auth_data, settings)

    signature = _response_field(payload, "signature")
    key = load_public_key(credential.public_key, credential.algorithm)
    signed = auth_data_raw + hashlib.sha256(client_data_raw).digest()
    _verify_signature(key, credential.algorithm, signature, signed)

    return auth_data.sign_count
