"""
Application factory for the fleetgate API.

Creates and configures the Flask app: logging, rate limiting, error
handlers, the AuthorizationService and the MFA blueprint.
"""

import logging
import time
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(config=None, store=None, recorder=None, settings=None, clock=None):
    """Create and configure the Flask application.

    Args:
        config: Optional dict of config overrides (e.g. {'TESTING': True}).
        store: CredentialStore; an InMemoryCredentialStore when omitted.
        recorder: AuditRecorder; writes to AUDIT_LOG_FILE when omitted.
        settings: AppSettings; get_settings() when omitted.
        clock: Clock shared by the store, recorder and service.

    Returns:
        Configured Flask app instance.
    """
    from config.settings import get_settings
    from core.timestamps import Clock

    settings = settings or get_settings()
    clock = clock or Clock()

    app = Flask(__name__)

    if config:
        app.config.update(config)

    # Logging first
    from api.logging_config import configure_logging
    configure_logging(app, settings)

    from api.extensions import init_extensions
    init_extensions(app, settings)

    # APIError / InfrastructureError -> JSON
    from core.errors import register_error_handlers
    register_error_handlers(app)

    _init_service(app, settings, store, recorder, clock)

    _register_blueprints(app, settings)

    _register_middleware(app)

    _register_error_handlers(app)

    return app


def _init_service(app, settings, store, recorder, clock):
    """Build the AuthorizationService once and attach it to the app."""
    from access import AuthorizationService, InMemoryCredentialStore
    from access.passwords import PasswordPolicy
    from access.decorators import EXTENSION_KEY
    from core.audit import AuditRecorder

    if store is None:
        store = InMemoryCredentialStore(
            clock=clock,
            session_ttl=timedelta(hours=settings.auth.session_ttl_hours),
            password_policy=PasswordPolicy.from_settings(settings),
        )
    if recorder is None:
        recorder = AuditRecorder(log_file=settings.audit_log_file or None, clock=clock)

    app.extensions[EXTENSION_KEY] = AuthorizationService(store, recorder, settings, clock)


def _register_blueprints(app, settings):
    """Register all route blueprints."""
    from api.extensions import limiter
    from api.routes.mfa import mfa_bp

    limiter.limit(settings.rate_limit.mfa)(mfa_bp)
    app.register_blueprint(mfa_bp)


def _register_middleware(app):
    """Per-request timing, access log line and security headers.

    The log line carries both the caller's correlation id and the server
    attempt id, which is the id stored on the request's audit entries.
    Expired enrollment sessions, step-up challenges and idle limiter keys
    are swept at most once per ``MFA_PURGE_INTERVAL_SECONDS``.
    """
    from access import security_headers
    from access.decorators import context_from_request, get_service

    @app.before_request
    def start_timer():
        g.started = time.perf_counter()
        get_service().housekeeping()

    @app.after_request
    def finish_request(response):
        ctx = context_from_request()
        response.headers['X-Request-ID'] = ctx.correlation_id

        elapsed_ms = (time.perf_counter() - g.get('started', time.perf_counter())) * 1000
        principal = g.get('principal')
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.INFO,
            f"{request.method} {request.path} {response.status_code} {elapsed_ms:.1f}ms",
            extra={
                'request_id': ctx.correlation_id,
                'attempt_id': ctx.attempt_id,
                'method': request.method,
                'endpoint': request.path,
                'status_code': response.status_code,
                'duration_ms': round(elapsed_ms, 2),
                'user': principal.user_id if principal else None,
            },
        )

        # Allowed and denied responses alike
        for name, value in security_headers(request.is_secure).items():
            response.headers[name] = value
        return response


def _register_error_handlers(app):
    """Last-resort handler: unexpected exceptions become an opaque 500."""
    from werkzeug.exceptions import HTTPException

    from core.errors import new_error_id

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        error_id = new_error_id()
        logger.error(
            f"Unhandled {type(e).__name__} on {request.method} {request.path}",
            exc_info=e,
            extra={'error_id': error_id, 'endpoint': request.path, 'method': request.method},
        )
        return jsonify({'error': 'Internal server error', 'error_id': error_id}), 500
