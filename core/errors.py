"""
Error taxonomy for the fleet access API.

Two families:
- APIError: request-level problems (bad input, missing resource, state
  conflicts). The message is written for the client and is returned as-is.
- InfrastructureError: the credential store, session store or audit sink
  misbehaved. Authorization gates treat these as a deny, the client only
  ever sees ``system_error`` and the detail goes to the log under an
  error_id.

Anything else is a bug and surfaces as a bare 500 with an error_id.
"""

import logging
import uuid
from typing import Any, Tuple

from flask import jsonify

logger = logging.getLogger(__name__)

SYSTEM_ERROR = "system_error"


class APIError(Exception):
    """Client-facing error; ``str(e)`` is safe to return."""
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(APIError):
    status_code = 400


class NotFoundError(APIError):
    status_code = 404


class ConflictError(APIError):
    status_code = 409


class InfrastructureError(Exception):
    """A backing service failed. Never echo the message to a client."""


class StoreUnavailableError(InfrastructureError):
    """Credential or session store unreachable."""


class StoreTimeoutError(InfrastructureError):
    """Store call exceeded ``auth.store_timeout_seconds``."""


class AuditSinkError(InfrastructureError):
    """Audit entry could not be persisted."""


def new_error_id() -> str:
    return uuid.uuid4().hex[:8]


def _classify(e: Exception, operation: str) -> Tuple[str, int]:
    if isinstance(e, APIError):
        return str(e), e.status_code
    if isinstance(e, InfrastructureError):
        return SYSTEM_ERROR, 503
    return f"{operation} failed", 500


def safe_error_response(e: Exception, operation: str) -> Tuple[Any, int]:
    """Turn an exception caught in a view into a JSON response.

    APIError is logged at WARNING and keeps its message. Infrastructure
    faults and unexpected exceptions are logged with traceback and
    replaced by a generic message. Every body carries an ``error_id``
    that matches the log line.
    """
    error_id = new_error_id()
    message, status = _classify(e, operation)

    if status < 500:
        logger.warning(f"{operation}: {e}", extra={'error_id': error_id})
    else:
        logger.error(f"{operation} failed: {type(e).__name__}", exc_info=e,
                     extra={'error_id': error_id})

    return jsonify({"error": message, "error_id": error_id}), status


def register_error_handlers(app):
    """Install handlers so views can simply raise APIError/InfrastructureError."""

    @app.errorhandler(APIError)
    def handle_api_error(e):
        return safe_error_response(e, request_operation())

    @app.errorhandler(InfrastructureError)
    def handle_infrastructure_error(e):
        return safe_error_response(e, request_operation())


def request_operation() -> str:
    from flask import request

    return f"{request.method} {request.path}"
