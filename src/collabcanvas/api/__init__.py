"""HTTP and WebSocket surface for a shared canvas room."""

from .app import create_app

__all__ = ["create_app"]
