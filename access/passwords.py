"""
Password verifiers, complexity rules and client device fingerprints.

The login flow that consumes these lives outside this package; the
credential store keeps only the verifier produced here and the
fingerprint a session was issued to.
"""
import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from werkzeug.security import generate_password_hash, check_password_hash

__all__ = [
    "hash_password",
    "verify_password",
    "PasswordPolicy",
    "device_fingerprint",
]

SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*(),.?\":{}|<>\[\]\-_=+;'/\\`~]")


def hash_password(password: str) -> str:
    """Hash a password with werkzeug's default scheme.

    Args:
        password: Plain text password

    Returns:
        Salted password verifier
    """
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its stored verifier.

    Args:
        password: Plain text password
        password_hash: Verifier to check against

    Returns:
        True if password matches, False otherwise
    """
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


@dataclass(frozen=True)
class PasswordPolicy:
    """Complexity requirements applied when a password is set."""
    min_length: int = 12
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True

    @classmethod
    def from_settings(cls, settings) -> "PasswordPolicy":
        auth = settings.auth
        return cls(
            min_length=auth.password_min_length,
            require_uppercase=auth.password_require_uppercase,
            require_lowercase=auth.password_require_lowercase,
            require_digit=auth.password_require_digit,
            require_special=auth.password_require_special,
        )

    def violations(self, password: str) -> list[str]:
        """Validate a password against the policy.

        Args:
            password: Password to validate

        Returns:
            One message per unmet requirement; empty when the password passes
        """
        errors = []
        if len(password or "") < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters")
        if self.require_uppercase and not re.search(r"[A-Z]", password or ""):
            errors.append("Password must contain at least one uppercase letter")
        if self.require_lowercase and not re.search(r"[a-z]", password or ""):
            errors.append("Password must contain at least one lowercase letter")
        if self.require_digit and not re.search(r"\d", password or ""):
            errors.append("Password must contain at least one digit")
        if self.require_special and not SPECIAL_CHARACTERS.search(password or ""):
            errors.append("Password must contain at least one special character")
        return errors


def device_fingerprint(
    user_agent: Optional[str],
    accept_language: Optional[str],
    accept_encoding: Optional[str],
) -> str:
    """SHA-256 over the client's User-Agent, Accept-Language and Accept-Encoding."""
    material = (user_agent or "") + (accept_language or "") + (accept_encoding or "")
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
