"""
TOTP and backup code primitives (RFC 6238).

Features:
- TOTP secret generation and provisioning URI / QR code
- Encrypted secret storage (Fernet)
- Code matching with +/- one time step of clock skew, reporting the
  matched step so callers can block replay
- Backup code generation, normalization and hashing
"""
import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from io import BytesIO
from typing import Optional

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken

from config.settings import AppSettings

logger = logging.getLogger(__name__)


# =============================================================================
# Secret Encryption
# =============================================================================

class SecretCipher:
    """Encrypts TOTP secrets for storage.

    Key priority:
    1. MFA_ENCRYPTION_KEY (must be a valid Fernet key)
    2. Derived from the JWT secret (works but logged as warning)
    """

    def __init__(self, settings: AppSettings):
        self._fernet = Fernet(self._resolve_key(settings))

    @staticmethod
    def _resolve_key(settings: AppSettings) -> bytes:
        key = settings.mfa.encryption_key.get_secret_value()
        if key:
            try:
                Fernet(key.encode())
                return key.encode()
            except ValueError:
                logger.warning("MFA_ENCRYPTION_KEY is not a valid Fernet key, ignoring it")

        jwt_secret = settings.auth.jwt_secret.get_secret_value()
        logger.warning("MFA_ENCRYPTION_KEY not set, deriving from JWT secret. Set MFA_ENCRYPTION_KEY for production.")
        derived = hashlib.sha256(jwt_secret.encode()).digest()
        return base64.urlsafe_b64encode(derived)

    def encrypt(self, secret: str) -> bytes:
        return self._fernet.encrypt(secret.encode())

    def decrypt(self, token: bytes) -> Optional[str]:
        """Decrypt a stored secret. Returns None if the token does not verify."""
        try:
            return self._fernet.decrypt(token).decode()
        except InvalidToken:
            logger.error("Stored TOTP secret failed to decrypt")
            return None


# =============================================================================
# Provisioning
# =============================================================================

def generate_secret() -> str:
    """Fresh base32 secret. Never reused across enrollment attempts."""
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str, settings: AppSettings) -> str:
    totp = pyotp.TOTP(
        secret,
        digits=settings.mfa.totp_digits,
        interval=settings.mfa.totp_period,
    )
    return totp.provisioning_uri(name=account_name, issuer_name=settings.mfa.issuer_name)


def qr_code_data_uri(uri: str) -> str:
    """Render a provisioning URI as a base64 PNG data URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    qr_base64 = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/png;base64,{qr_base64}"


# =============================================================================
# Verification
# =============================================================================

def match_code(
    secret: str,
    code: str,
    for_time: datetime,
    period: int = 30,
    digits: int = 6,
    valid_window: int = 1,
) -> Optional[int]:
    """Check a submitted code against the steps around ``for_time``.

    Args:
        secret: Base32 TOTP secret
        code: Code as typed by the user (spaces tolerated)
        for_time: Verification instant
        period: Time step in seconds
        digits: Code length
        valid_window: Steps of skew accepted on each side

    Returns:
        The matched time step, or None on mismatch
    """
    code = (code or "").replace(" ", "")
    if len(code) != digits or not code.isdigit():
        return None

    totp = pyotp.TOTP(secret, digits=digits, interval=period)
    current_step = totp.timecode(for_time)
    for offset in range(-valid_window, valid_window + 1):
        if hmac.compare_digest(totp.at(for_time, offset), code):
            return current_step + offset
    return None


# =============================================================================
# Backup Codes
# =============================================================================

def generate_backup_codes(count: int) -> list[str]:
    """Generate ``count`` 64-bit codes formatted XXXX-XXXX-XXXX-XXXX."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(8).upper()
        codes.append("-".join(raw[i:i + 4] for i in range(0, 16, 4)))
    return codes


def normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()
