"""
Flask extension instances.

Centralized extension objects initialized via init_extensions(app, settings).
Import these objects in blueprints instead of creating new instances.
"""

import logging

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

# Created in init_extensions with full config
limiter = None


def _get_rate_limit_storage(settings):
    """Get rate limit storage URI, falling back to memory when unset."""
    return settings.rate_limit.storage or "memory://"


def _get_rate_limit_key():
    """
    Custom rate limit key function.
    Uses the token subject if a valid token is present, otherwise IP address.
    """
    import jwt
    from flask import current_app, request

    from access.tokens import decode_token, extract_bearer

    token = extract_bearer(request.headers.get("Authorization"))
    if token:
        settings = current_app.extensions["fleetgate"].settings
        try:
            payload = decode_token(token, settings)
            return f"user:{payload.get('sub', 'unknown')}"
        except jwt.InvalidTokenError:
            pass
    return f"ip:{get_remote_address()}"


def init_extensions(app, settings):
    """Initialize all Flask extensions with the app instance.

    Args:
        app: Flask application instance
        settings: AppSettings
    """
    global limiter
    limiter = Limiter(
        app=app,
        key_func=_get_rate_limit_key,
        default_limits=[settings.rate_limit.default],
        storage_uri=_get_rate_limit_storage(settings),
        strategy="moving-window",
    )

    @app.errorhandler(429)
    def ratelimit_handler(e):
        logger.warning(f"Rate limit exceeded: {e.description}")
        return {
            "error": "rate_limited",
            "message": str(e.description),
            "retry_after": e.get_response().headers.get("Retry-After", 60)
        }, 429

    return limiter
