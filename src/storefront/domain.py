"""Storefront bounded context: order fulfillment.

Turns carts into orders, reserves stock so it is never oversold, and
reconciles payments reported by external gateways. Every aggregate lives in
this one domain so a single unit of work can span Order, ProductStock and
Cart writes.
"""

import structlog
from protean.domain import Domain

storefront = Domain(name="storefront")

logger = structlog.get_logger(__name__)
