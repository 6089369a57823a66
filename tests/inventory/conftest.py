"""Shared fixtures for inventory tests."""

import pytest
from protean import current_domain
from storefront.inventory.stock import ProductStock


@pytest.fixture()
def stocked():
    """Persist a ProductStock with ``quantity`` units and return its product id."""

    def _stocked(product_id="prod-001", quantity=10):
        stock = ProductStock.create(product_id, quantity)
        current_domain.repository_for(ProductStock).add(stock)
        return product_id

    return _stocked
