"""
asgi.py -- ASGI entry point for nestguard.

Run with:  uvicorn asgi:app --reload

api/main.py owns the app and its routers; this module only re-exports it so
process managers have one stable import path.
"""

from api.main import app

__all__ = ["app"]
