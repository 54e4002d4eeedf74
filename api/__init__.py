"""
Operational API for the notification pipeline.

This package provides a single FastAPI application that exposes:
- Worker lifecycle and health endpoints
- Event publishing
- Delivery status, history and stats
- Admin operations (force retry, queue purge)
"""

from api.main import app

__all__ = ["app"]
