"""Storefront API package."""

from storefront.api.errors import register_error_handlers
from storefront.api.routes import inventory_router, maintenance_router, order_router, payment_router

__all__ = ["order_router", "payment_router", "inventory_router", "maintenance_router", "register_error_handlers"]
