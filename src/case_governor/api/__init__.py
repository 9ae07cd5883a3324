"""FastAPI routes for the governor's query surface."""

from case_governor.api.routes import create_app, router, status_for

__all__ = ["create_app", "router", "status_for"]
