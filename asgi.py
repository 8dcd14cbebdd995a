"""
asgi.py -- Application assembly for the portal auth service.

The ASGI entry point servers import. api/main.py owns the app; this module
only re-exports it so deployment config never has to name an inner package.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
