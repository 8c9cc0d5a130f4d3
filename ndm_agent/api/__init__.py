# API handlers and routes module
from .handlers import APIHandlers
from .routes import register_routes

__all__ = ["APIHandlers", "register_routes"]
