"""Read-side order lookups used by the API."""

import math

from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from storefront.errors import NotFoundError
from storefront.ordering.order import Order

MAX_PAGE_SIZE = 100


def get_order(order_id, user_id=None) -> Order:
    """Load an order; when ``user_id`` is given, orders of other users are reported as missing."""
    try:
        order = current_domain.repository_for(Order).get(str(order_id))
    except ObjectNotFoundError:
        raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))

    if user_id is not None and not order.is_owned_by(user_id):
        raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
    return order


def _bounds(page, limit) -> tuple[int, int]:
    return max(int(page), 1), min(max(int(limit), 1), MAX_PAGE_SIZE)


def _paged(orders, total, page, limit) -> dict:
    return {
        "orders": orders,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


def list_orders(user_id, status=None, page=1, limit=10) -> dict:
    """One user's orders, newest first."""
    page, limit = _bounds(page, limit)
    orders, total = current_domain.repository_for(Order).page_for_user(user_id, status=status, page=page, limit=limit)
    return _paged(orders, total, page, limit)


def list_all_orders(status=None, page=1, limit=10) -> dict:
    """Orders across all users for back-office views, newest first."""
    page, limit = _bounds(page, limit)
    orders, total = current_domain.repository_for(Order).page_all(status=status, page=page, limit=limit)
    return _paged(orders, total, page, limit)
