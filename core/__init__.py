"""
Shared building blocks used by ``access`` and ``api``: the error
taxonomy, the audit recorder, bounded store calls, per-key lock striping and
the injectable clock.
"""

from .audit import AuditEntry, AuditOutcome, AuditRecorder
from .bounded import BoundedExecutor
from .locks import StripedLock
from .errors import (
    APIError,
    AuditSinkError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    StoreTimeoutError,
    StoreUnavailableError,
    ValidationError,
    safe_error_response,
)
from .timestamps import Clock, FrozenClock

__all__ = [
    "AuditEntry",
    "AuditOutcome",
    "AuditRecorder",
    "BoundedExecutor",
    "StripedLock",
    "APIError",
    "AuditSinkError",
    "ConflictError",
    "InfrastructureError",
    "NotFoundError",
    "StoreTimeoutError",
    "StoreUnavailableError",
    "ValidationError",
    "safe_error_response",
    "Clock",
    "FrozenClock",
]
