"""API module for HTTP routes and WebSocket handlers.

This module exposes the FastAPI routers for the workflow coordination backend.
"""

from api.routes import BackendServices, get_services, router, set_services
from api.websocket import websocket_router

__all__ = ["BackendServices", "get_services", "router", "set_services", "websocket_router"]
