"""Local HTTP API."""

from .capabilities import create_capability_routes, http_status_for

__all__ = ["create_capability_routes", "http_status_for"]
