"""
MFA enrollment and step-up endpoints.

The client drives the server-held enrollment state machine; every
response carries the current ``state`` and only the payload the next
step needs. Backup codes appear in exactly one response.
"""

from flask import Blueprint, g, jsonify, request

from access import EnrollmentState, ErrorCode, get_service, jwt_required
from access.decorators import context_from_request
from core.errors import NotFoundError, ValidationError, safe_error_response

mfa_bp = Blueprint('mfa', __name__, url_prefix='/api/auth/mfa')

ERROR_STATUS = {
    ErrorCode.MFA_INVALID_CODE: 400,
    ErrorCode.ENROLLMENT_FAILED: 400,
    ErrorCode.ENROLLMENT_INVALID_STATE: 409,
    ErrorCode.ENROLLMENT_CONFLICT: 409,
    ErrorCode.ENROLLMENT_EXPIRED: 410,
    ErrorCode.MFA_RATE_LIMITED: 429,
}


def _respond(result):
    if result.ok:
        return jsonify(result.to_dict())
    return jsonify(result.to_dict()), ERROR_STATUS.get(result.error, 400)


def _audit_ids():
    ctx = context_from_request()
    return {"attempt_id": ctx.attempt_id, "request_id": ctx.request_id}


# =============================================================================
# Enrollment
# =============================================================================

@mfa_bp.route('/enrollment', methods=['POST'])
@jwt_required
def start_enrollment():
    """Start (or restart) enrollment for the current user."""
    data = request.get_json(silent=True) or {}
    method = str(data.get("method", "")).strip().lower()
    if method not in ("totp", "webauthn"):
        raise ValidationError("method must be 'totp' or 'webauthn'")

    try:
        result = get_service().enrollment.start_enrollment(
            g.principal.user_id, method, **_audit_ids()
        )
    except Exception as e:
        return safe_error_response(e, "start enrollment")
    return _respond(result)


@mfa_bp.route('/enrollment', methods=['GET'])
@jwt_required
def enrollment_state():
    """Current enrollment state (no secrets)."""
    try:
        return jsonify(get_service().enrollment.describe(g.principal.user_id))
    except Exception as e:
        return safe_error_response(e, "read enrollment state")


@mfa_bp.route('/enrollment', methods=['DELETE'])
@jwt_required
def cancel_enrollment():
    try:
        result = get_service().enrollment.cancel_enrollment(
            g.principal.user_id, **_audit_ids()
        )
    except Exception as e:
        return safe_error_response(e, "cancel enrollment")
    return _respond(result)


@mfa_bp.route('/enrollment/acknowledge', methods=['POST'])
@jwt_required
def acknowledge_secret():
    """Client confirms the TOTP secret was added to its authenticator app."""
    try:
        result = get_service().enrollment.acknowledge_secret(
            g.principal.user_id, **_audit_ids()
        )
    except Exception as e:
        return safe_error_response(e, "acknowledge secret")
    return _respond(result)


@mfa_bp.route('/enrollment/totp/verify', methods=['POST'])
@jwt_required
def verify_totp():
    data = request.get_json(silent=True) or {}
    code = str(data.get("code", "")).strip()
    if not code:
        raise ValidationError("Missing code")

    try:
        result = get_service().enrollment.verify_totp(
            g.principal.user_id, code, **_audit_ids()
        )
    except Exception as e:
        return safe_error_response(e, "verify TOTP code")

    if result.ok and result.state is EnrollmentState.BACKUP_CODES_ISSUED:
        body = result.to_dict()
        body["warning"] = "Save these backup codes securely. They will not be shown again."
        return jsonify(body)
    return _respond(result)


@mfa_bp.route('/enrollment/commit', methods=['POST'])
@jwt_required
def commit_enrollment():
    """Client confirms it stored the backup codes; the TOTP factor goes live."""
    try:
        result = get_service().enrollment.commit_enrollment(
            g.principal.user_id,
            session_id=g.principal.session_id,
            **_audit_ids(),
        )
    except Exception as e:
        return safe_error_response(e, "commit enrollment")
    return _respond(result)


@mfa_bp.route('/enrollment/webauthn/verify', methods=['POST'])
@jwt_required
def verify_webauthn():
    data = request.get_json(silent=True) or {}
    credential = data.get("credential")
    if not isinstance(credential, dict):
        raise ValidationError("Missing credential")

    try:
        result = get_service().enrollment.complete_webauthn(
            g.principal.user_id,
            credential,
            session_id=g.principal.session_id,
            **_audit_ids(),
        )
    except Exception as e:
        return safe_error_response(e, "verify security key")
    return _respond(result)


# =============================================================================
# Step-up and Status
# =============================================================================

@mfa_bp.route('/step-up/challenge', methods=['POST'])
@jwt_required
def step_up_challenge():
    """Issue WebAuthn request options for an inline step-up assertion."""
    try:
        options = get_service().begin_step_up(g.principal)
    except Exception as e:
        return safe_error_response(e, "issue step-up challenge")
    if options is None:
        raise NotFoundError("No security key enrolled")
    return jsonify({"options": options})


@mfa_bp.route('/status', methods=['GET'])
@jwt_required
def mfa_status():
    """Factor summary for the current user."""
    service = get_service()
    user_id = g.principal.user_id

    if not service.settings.mfa.enabled:
        return jsonify({
            "global_enabled": False,
            "message": "MFA is disabled globally"
        })

    try:
        user = service.bounded.call(service.store.get_user, user_id)
        totp_credential = service.bounded.call(service.store.get_totp, user_id)
        webauthn_credential = service.bounded.call(service.store.get_webauthn, user_id)
        backup_codes = service.bounded.call(service.store.get_backup_codes, user_id)
    except Exception as e:
        return safe_error_response(e, "read MFA status")

    return jsonify({
        "global_enabled": True,
        "mfa_enrolled": bool(user and user.mfa_enrolled),
        "session_mfa_satisfied": g.principal.mfa_satisfied,
        "totp": totp_credential is not None,
        "webauthn": webauthn_credential is not None,
        "backup_codes_remaining": sum(1 for c in backup_codes if not c.used),
        "enrollment_state": service.enrollment.get_state(user_id).value,
    })
