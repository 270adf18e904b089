"""HTTP surface for the sync engine.

Exposes enqueue, drain, retry and housekeeping endpoints using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
