"""
HTTP integration for the fleet access core.

    from api import create_app
    app = create_app()
"""

from .app import create_app

__all__ = ["create_app"]
