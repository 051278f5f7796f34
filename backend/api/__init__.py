"""API module for HTTP routes and WebSocket handlers.

This module exposes the FastAPI routers for the Campaign Saga backend.
"""

from api.routes import Services, router, set_services
from api.websocket import set_token_issuer, websocket_router

__all__ = ["Services", "router", "set_services", "set_token_issuer", "websocket_router"]
