"""HTTP surface for Bulwark."""

from .app import create_app
from .middleware import AbuseGuardMiddleware, get_client_identifier

__all__ = ["create_app", "AbuseGuardMiddleware", "get_client_identifier"]
