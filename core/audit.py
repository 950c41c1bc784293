"""
Append-only audit trail for sensitive operations and authorization decisions.

Usage:
    from core.audit import AuditRecorder

    recorder = AuditRecorder(log_file="/var/log/fleetgate/audit.jsonl")
    recorder.record("user-7", "vehicle_transfer", AuditOutcome.SUCCESS,
                    target_department="MOH", attempt_id=ctx.attempt_id,
                    request_id=ctx.request_id)

    # Most recent first
    entries = recorder.entries(limit=20, outcome=AuditOutcome.DENIED)

Entries are immutable. ``attempt_id`` is minted by the server for each
inbound request; recording the same (actor_id, attempt_id, operation) a
second time returns the first entry, so nested wrappers inside one request
write one entry. ``request_id`` is the caller-supplied correlation id and
is stored as-is; it never suppresses an entry.
"""

import json
import logging
import os
import re
import threading
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from core.errors import AuditSinkError
from core.timestamps import Clock

logger = logging.getLogger(__name__)

MAX_ENTRIES = 5000

# =============================================================================
# Detail Redaction
# =============================================================================

ENABLE_AUDIT_REDACTION = os.getenv("ENABLE_AUDIT_REDACTION", "true").lower() == "true"
MAX_REDACTION_LENGTH = 10240  # Skip redaction on strings > 10KB

# Order matters - more specific first
REDACTION_PATTERNS = [
    (re.compile(r'\b(password|passwd|pwd)\s*[=:]\s*\S+', re.IGNORECASE), r'\1=***REDACTED***'),
    (re.compile(r'\b(secret|api[_-]?key|auth[_-]?token|code)\s*[=:]\s*\S+', re.IGNORECASE), r'\1=***REDACTED***'),
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]{20,}', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(["\'](?:password|secret|token|code)["\'])\s*:\s*["\'][^"\']+["\']', re.IGNORECASE), r'\1: "***REDACTED***"'),
    # Backup codes as issued
    (re.compile(r'\b[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}\b', re.IGNORECASE), '***REDACTED***'),
    # otpauth:// provisioning URIs carry the raw secret
    (re.compile(r'otpauth://\S+', re.IGNORECASE), 'otpauth://***REDACTED***'),
]


def redact(text: Optional[str]) -> Optional[str]:
    """Remove secrets and one-time codes from audit detail text."""
    if not ENABLE_AUDIT_REDACTION or not text:
        return text
    if len(text) > MAX_REDACTION_LENGTH:
        return text

    result = text
    for pattern, replacement in REDACTION_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    SYSTEM_ERROR = "system_error"


@dataclass(frozen=True)
class AuditEntry:
    actor_id: Optional[str]
    operation: str
    outcome: AuditOutcome
    timestamp: str
    target_department: Optional[str] = None
    detail: Optional[str] = None
    attempt_id: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data

    @property
    def attempt_key(self) -> Optional[tuple]:
        if self.attempt_id is None:
            return None
        return (self.actor_id, self.attempt_id, self.operation)


class AuditRecorder:
    """
    Thread-safe, append-only audit recorder.

    Keeps the most recent entries in memory and, when ``log_file`` is set,
    appends every entry to it as one JSON line. A failed file append raises
    AuditSinkError so callers can fail closed.

    The attempt index only covers entries still held in memory; it is
    trimmed together with the entry buffer.
    """

    def __init__(
        self,
        log_file: Optional[Union[str, Path]] = None,
        max_entries: int = MAX_ENTRIES,
        clock: Optional[Clock] = None,
    ):
        self._log_file = Path(log_file) if log_file else None
        self._clock = clock or Clock()
        self._entries: deque = deque(maxlen=max_entries)
        self._by_attempt: dict[tuple, AuditEntry] = {}
        self._lock = threading.Lock()

    def record(
        self,
        actor_id: Optional[str],
        operation: str,
        outcome: AuditOutcome,
        target_department: Optional[str] = None,
        detail: Optional[str] = None,
        attempt_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AuditEntry:
        """
        Append an entry to the audit trail.

        Args:
            actor_id: User performing the operation (None when unauthenticated)
            operation: Operation name (e.g., "vehicle_transfer", "mfa_enrollment_commit")
            outcome: success, failure, denied or system_error
            target_department: Department that owns the affected resource
            detail: Free text; secrets and codes are redacted before storage
            attempt_id: Server-issued request attempt id, used for de-duplication
            request_id: Caller-supplied correlation id, stored only

        Returns:
            The stored entry (the earlier one for a repeated attempt)
        """
        with self._lock:
            key = (actor_id, attempt_id, operation)
            if attempt_id is not None:
                existing = self._by_attempt.get(key)
                if existing is not None:
                    return existing

            entry = AuditEntry(
                actor_id=actor_id,
                operation=operation,
                outcome=AuditOutcome(outcome),
                timestamp=self._clock.now().isoformat(),
                target_department=target_department,
                detail=redact(detail),
                attempt_id=attempt_id,
                request_id=request_id,
            )
            self._append_to_file(entry)
            if len(self._entries) == self._entries.maxlen:
                evicted = self._entries[0].attempt_key
                if evicted is not None:
                    self._by_attempt.pop(evicted, None)
            self._entries.append(entry)
            if attempt_id is not None:
                self._by_attempt[key] = entry

        logger.info(
            f"audit {entry.operation} actor={entry.actor_id} outcome={entry.outcome.value}",
            extra={"audit": entry.to_dict()},
        )
        return entry

    def _append_to_file(self, entry: AuditEntry) -> None:
        if self._log_file is None:
            return
        try:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            raise AuditSinkError(f"Failed to append audit entry: {e}") from e

    def entries(
        self,
        limit: int = 50,
        actor_id: Optional[str] = None,
        operation: Optional[str] = None,
        outcome: Optional[AuditOutcome] = None,
    ) -> list[AuditEntry]:
        """
        Get entries with optional filtering.

        Returns:
            List of entries, most recent first
        """
        with self._lock:
            entries = list(self._entries)

        if actor_id is not None:
            entries = [e for e in entries if e.actor_id == actor_id]
        if operation is not None:
            entries = [e for e in entries if e.operation == operation]
        if outcome is not None:
            entries = [e for e in entries if e.outcome == AuditOutcome(outcome)]

        return list(reversed(entries[-limit:]))
