import os
from pathlib import Path

import pytest
from protean.integrations.pytest import DomainFixture


def pytest_addoption(parser):
    parser.addoption(
        "--env",
        action="store",
        default="test",
        help="Config environment to run tests on",
    )


def pytest_sessionstart(session):
    """Pytest hook to run before collecting tests.

    Selects the ``domain.toml`` overlay before the storefront domain is
    imported, so test runs use the in-memory providers and sync processing.
    """
    os.environ["PROTEAN_ENV"] = session.config.option.env


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))

        if "/domain/" in test_path:
            item.add_marker(pytest.mark.domain)
        elif "/application/" in test_path:
            item.add_marker(pytest.mark.application)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
            # Integration tests are often slower
            if not any(m.name == "fast" for m in item.iter_markers()):
                item.add_marker(pytest.mark.slow)


@pytest.fixture(scope="session")
def storefront_bed():
    from storefront.domain import storefront

    bed = DomainFixture(storefront)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(storefront_bed):
    from storefront.settings import Settings, set_settings

    # No sleeping between gateway retries in tests
    set_settings(Settings(environment="test", gateway_retry_backoff_seconds=0.0))

    with storefront_bed.domain_context():
        yield

    from storefront.notifications import reset_sink
    from storefront.payments.gateway import reset_gateways
    from storefront.settings import reset_settings
    from storefront.utils.locking import locks

    reset_gateways()
    reset_sink()
    reset_settings()
    locks.clear()


# ---------------------------------------------------------------------------
# Shared builders
# ---------------------------------------------------------------------------
SHIPPING_ADDRESS = {
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


@pytest.fixture()
def shipping_address():
    return dict(SHIPPING_ADDRESS)


@pytest.fixture()
def make_product():
    """Create an active product and receive ``stock`` units for it."""
    from protean import current_domain
    from storefront.catalogue.product import Product
    from storefront.inventory import manager as inventory

    def _make(name="Widget", price=10.0, discount=0.0, stock=10, is_active=True):
        product = Product(name=name, price=price, discount=discount, is_active=is_active)
        current_domain.repository_for(Product).add(product)
        if stock:
            inventory.receive(product.id, stock)
        return product

    return _make


@pytest.fixture()
def fill_cart():
    """Put ``(product, quantity)`` pairs in the user's cart."""
    from protean import current_domain
    from storefront.cart.cart import Cart

    def _fill(user_id, *lines, discount=0.0):
        repo = current_domain.repository_for(Cart)
        cart = repo.find_for_user(user_id) or Cart.create(user_id, discount=discount)
        cart.discount = discount
        for product, quantity in lines:
            cart.add_item(product.id, quantity)
        repo.add(cart)
        return cart

    return _fill


@pytest.fixture()
def place_pending_order(make_product, fill_cart, shipping_address):
    """Place an order for ``quantity`` units of a fresh product; returns (order, product)."""
    from storefront.ordering.placement import place_order

    def _place(user_id="user-001", price=25.0, quantity=1, stock=10):
        product = make_product(price=price, stock=stock)
        fill_cart(user_id, (product, quantity))
        order = place_order(user_id, shipping_address, payment_method="card")
        return order, product

    return _place


@pytest.fixture()
def fake_gateway():
    """The fake adapter registered for the card gateway."""
    from storefront.payments.gateway import CARD, get_gateway

    return get_gateway(CARD)


@pytest.fixture()
def sink():
    from storefront.notifications import get_sink

    return get_sink()


@pytest.fixture()
def client(storefront_bed):
    """TestClient over the storefront routers, with the domain context pushed per request."""
    from fastapi import FastAPI, Request
    from fastapi.testclient import TestClient
    from storefront.api import (
        inventory_router,
        maintenance_router,
        order_router,
        payment_router,
        register_error_handlers,
    )

    app = FastAPI()

    @app.middleware("http")
    async def domain_context_middleware(request: Request, call_next):
        with storefront_bed.domain.domain_context():
            return await call_next(request)

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(inventory_router)
    app.include_router(maintenance_router)
    register_error_handlers(app)
    return TestClient(app)
