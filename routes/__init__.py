"""Routes package initializer."""

from .forecast_api import register_forecast_routes
from .sync_routes import register_sync_routes

__all__ = [
    "register_forecast_routes",
    "register_sync_routes",
]
