"""
fleetgate settings, loaded from the environment (and ``.env``).

Each concern has its own BaseSettings group with an env prefix
(``MFA_``, ``WEBAUTHN_``, ``RATE_LIMIT_``); AppSettings composes them.
Construction fails when JWT_SECRET is missing, unless TESTING is set.

    from config.settings import get_settings
    ttl = get_settings().mfa.enrollment_ttl_minutes
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


def _is_testing() -> bool:
    """Check if running in test mode."""
    return (
        os.getenv("TESTING", "").lower() in ("true", "1")
        or os.getenv("FLASK_ENV", "") == "testing"
    )


# =============================================================================
# Nested Settings Groups
# =============================================================================


class AuthSettings(BaseSettings):
    """Bearer token and session configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    jwt_secret: SecretStr = SecretStr("")
    jwt_algorithm: str = "HS256"
    session_ttl_hours: int = 12

    # Upper bound on any single store / audit call made while gating a request
    store_timeout_seconds: float = 2.0

    # Password complexity, checked when a password is set
    password_min_length: int = 12
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_digit: bool = True
    password_require_special: bool = True

    # Reject a session token presented from a different client fingerprint
    bind_session_fingerprint: bool = True


class MFASettings(BaseSettings):
    """TOTP, backup code and enrollment configuration."""

    model_config = {"env_prefix": "MFA_", "extra": "ignore"}

    enabled: bool = True
    issuer_name: str = "Fleet Management"
    encryption_key: SecretStr = SecretStr("")

    totp_period: int = 30
    totp_digits: int = 6
    totp_valid_window: int = 1  # +/- time steps accepted for clock skew

    backup_code_count: int = 10
    enrollment_ttl_minutes: int = 10

    # Sliding window for TOTP verification during enrollment
    verify_max_attempts: int = 5
    verify_window_minutes: int = 5

    # Sliding window for inline step-up attempts on an MFA-gated route
    step_up_max_attempts: int = 5
    step_up_window_minutes: int = 5
    step_up_challenge_ttl_seconds: int = 120

    # Minimum spacing between housekeeping sweeps of expired in-memory state
    purge_interval_seconds: int = 60


class WebAuthnSettings(BaseSettings):
    """WebAuthn relying party configuration."""

    model_config = {"env_prefix": "WEBAUTHN_", "extra": "ignore"}

    rp_id: str = "localhost"
    rp_name: str = "Fleet Management"
    origin: str = "http://localhost:3000"
    timeout_ms: int = 60000


class RateLimitSettings(BaseSettings):
    """HTTP rate limiting configuration."""

    model_config = {"env_prefix": "RATE_LIMIT_", "extra": "ignore"}

    default: str = "500 per minute"
    mfa: str = "20 per minute"
    storage: Optional[str] = None  # memory:// when unset


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Append-only audit trail (JSON lines); empty keeps entries in memory only
    audit_log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    auth: AuthSettings = None  # type: ignore[assignment]
    mfa: MFASettings = None  # type: ignore[assignment]
    webauthn: WebAuthnSettings = None  # type: ignore[assignment]
    rate_limit: RateLimitSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("auth") is None:
            values["auth"] = AuthSettings()
        if values.get("mfa") is None:
            values["mfa"] = MFASettings()
        if values.get("webauthn") is None:
            values["webauthn"] = WebAuthnSettings()
        if values.get("rate_limit") is None:
            values["rate_limit"] = RateLimitSettings()
        return values

    @model_validator(mode="after")
    def _validate_required_secrets(self):
        """Require JWT_SECRET in production; bypass only in TESTING mode."""
        if _is_testing():
            return self

        if not self.auth.jwt_secret.get_secret_value():
            raise ValueError(
                "JWT_SECRET must be set; tokens cannot be signed without it. "
                "Any 32+ byte random hex string works (e.g. openssl rand -hex 32)."
            )

        return self


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Process-wide AppSettings; call get_settings.cache_clear() to reload."""
    return AppSettings()
