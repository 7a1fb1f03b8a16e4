"""
Warden HTTP API.
"""

from warden.api.routes import setup_admin_routes, setup_routes

__all__ = ["setup_admin_routes", "setup_routes"]
