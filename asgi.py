"""
asgi.py -- ASGI entry point for Gatekeeper.

Run with:  uvicorn asgi:app --reload

api/main.py owns the application object; this module only re-exports it so
the process manager has a stable import path.
"""

from api.main import app

__all__ = ["app"]
