# flask_app/routes/__init__.py
"""
Application routes package
"""

from .auth import register_auth_routes
from .metrics import register_metrics_route


def init_routes(app):
    """Initialize all application routes"""
    register_auth_routes(app)
    register_metrics_route(app)
