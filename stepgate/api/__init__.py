"""
stepgate API - read-only FastAPI view of persisted sessions.

Endpoints:
    GET /api/health                   - Health check
    GET /api/sessions                 - List sessions
    GET /api/sessions/{id}            - Session state
    GET /api/sessions/{id}/events     - Session events
"""

from .server import create_app

__all__ = ["create_app"]
