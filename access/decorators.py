"""
Flask route decorators over the AuthorizationService.

Provides:
- jwt_required: Require a valid bearer token (sets g.principal)
- permission_required: Require a permission
- role_required: Require any of the given roles
- department_scoped: Require access to the target resource's department
- clearance_required: Require a minimum clearance level
- mfa_required: Require a second factor on the session (inline step-up allowed)
- audited: Record one audit entry per request attempt

Every decorator except audited implies jwt_required. Stack audited
outermost so it sees denials from the gates below it:

    @bp.route("/vehicles/<department_id>/<vehicle_id>/transfer", methods=["POST"])
    @audited("vehicle_transfer")
    @permission_required("transfer_vehicles")
    @department_scoped
    @mfa_required
    def transfer_vehicle(department_id, vehicle_id):
        ...
"""
import logging
import re
import uuid
from functools import wraps
from typing import Optional

from flask import current_app, g, jsonify, request

from core.errors import new_error_id

from .middleware import AuthorizationService, GateResult, RequestContext

logger = logging.getLogger(__name__)

EXTENSION_KEY = "fleetgate"

REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def get_service() -> AuthorizationService:
    """The service registered on the current app by create_app."""
    return current_app.extensions[EXTENSION_KEY]


def client_request_id() -> Optional[str]:
    """The caller's X-Request-ID if it is a short token-safe string, else None."""
    value = request.headers.get(REQUEST_ID_HEADER)
    if value and REQUEST_ID_PATTERN.match(value):
        return value
    return None


def context_from_request() -> RequestContext:
    """Build (once per request) the RequestContext for the current Flask request."""
    ctx = g.get("auth_context")
    if ctx is None:
        ctx = RequestContext(
            headers=request.headers,
            path_params=request.view_args or {},
            query=request.args,
            body=request.get_json(silent=True),
            method=request.method,
            path=request.path,
            is_secure=request.is_secure,
            remote_addr=request.remote_addr,
            attempt_id=uuid.uuid4().hex,
            request_id=client_request_id(),
        )
        g.auth_context = ctx
    return ctx


def deny_response(result: GateResult):
    """JSON deny body with only the category and an error id."""
    error_id = new_error_id()
    logger.info(
        f"Denied {request.method} {request.path}: {result.reason.value if result.reason else 'unknown'}",
        extra={"error_id": error_id},
    )
    body = result.body()
    body["error_id"] = error_id
    return jsonify(body), result.status


def _run(gate):
    ctx = context_from_request()
    result = gate(ctx)
    g.principal = ctx.principal
    return result


def jwt_required(f):
    """Decorator to require a valid bearer token for an endpoint.

    Sets g.principal on success. Runs at most once per request however
    many decorators imply it.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        ctx = context_from_request()
        if ctx.principal is None:
            result = _run(get_service().authenticate_token)
            if not result.allowed:
                return deny_response(result)
        g.principal = ctx.principal
        return f(*args, **kwargs)
    return decorated


def permission_required(permission: str):
    """Decorator factory to require a permission.

    Usage:
        @permission_required("manage_vehicles")
        def retire_vehicle():
            ...
    """
    def decorator(f):
        @wraps(f)
        @jwt_required
        def decorated(*args, **kwargs):
            result = _run(get_service().require_permission(permission))
            if not result.allowed:
                return deny_response(result)
            return f(*args, **kwargs)
        return decorated
    return decorator


def role_required(*allowed_roles: str):
    """Decorator factory to require any of the given roles.

    Usage:
        @role_required("super_admin", "org_admin")
        def admin_only():
            ...
    """
    def decorator(f):
        @wraps(f)
        @jwt_required
        def decorated(*args, **kwargs):
            result = _run(get_service().require_role(*allowed_roles))
            if not result.allowed:
                return deny_response(result)
            return f(*args, **kwargs)
        return decorated
    return decorator


def department_scoped(f):
    """Decorator to deny access to resources owned by another department."""
    @wraps(f)
    @jwt_required
    def decorated(*args, **kwargs):
        result = _run(get_service().require_department_access)
        if not result.allowed:
            return deny_response(result)
        return f(*args, **kwargs)
    return decorated


def clearance_required(level: str):
    def decorator(f):
        @wraps(f)
        @jwt_required
        def decorated(*args, **kwargs):
            result = _run(get_service().require_clearance(level))
            if not result.allowed:
                return deny_response(result)
            return f(*args, **kwargs)
        return decorated
    return decorator


def mfa_required(f):
    """Decorator to require a second factor on the current session."""
    @wraps(f)
    @jwt_required
    def decorated(*args, **kwargs):
        result = _run(get_service().require_mfa)
        if not result.allowed:
            return deny_response(result)
        return f(*args, **kwargs)
    return decorated


def audited(operation: str):
    """Decorator factory that audits the wrapped route once per attempt.

    Retries carrying the same X-Request-ID header are recorded once.
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            service = get_service()

            @service.audit_sensitive_operation(operation)
            def handler(ctx):
                return f(*args, **kwargs)

            return handler(context_from_request())
        return decorated
    return decorator
