"""
Route blueprints for the fleet access API.
"""

from .mfa import mfa_bp

__all__ = ["mfa_bp"]
