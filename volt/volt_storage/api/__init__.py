"""
Admin API for the Volt storage layer.

This package provides:
- aiohttp application factory (create_http_app)
- Request models validated with pydantic
"""

from .http_server import HttpConfig, MigrateRequest, ConnectionTestRequest, create_http_app

__all__ = [
    "HttpConfig",
    "MigrateRequest",
    "ConnectionTestRequest",
    "create_http_app",
]
