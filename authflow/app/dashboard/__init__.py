"""
Dashboard Package
=================

Protected resources behind the session guard.

Main Components:
----------------
- routes.py: FastAPI router with /dashboard endpoints

Usage:
------
    from authflow.app.dashboard import dashboard_router
    app.include_router(dashboard_router)
"""

from .routes import dashboard_router

__all__ = ["dashboard_router"]
