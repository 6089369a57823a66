"""Tests for order number generation."""

import re

import pytest
from protean import current_domain
from storefront.errors import ConflictError
from storefront.ordering import numbering
from storefront.ordering.numbering import generate_order_number
from storefront.ordering.order import Order

ORDER_NUMBER = re.compile(r"^ORD-[0-9A-Z]+-[0-9A-Z]{4}$")


class TestGenerateOrderNumber:
    def test_format(self):
        assert ORDER_NUMBER.match(generate_order_number())

    def test_numbers_differ(self):
        numbers = {generate_order_number() for _ in range(20)}
        assert len(numbers) == 20

    def test_taken_number_is_skipped(self, build_order, monkeypatch):
        existing = build_order()
        current_domain.repository_for(Order).add(existing)

        candidates = iter([existing.order_number, "ORD-FRESH-0001"])
        monkeypatch.setattr(numbering, "_candidate", lambda: next(candidates))

        assert generate_order_number() == "ORD-FRESH-0001"

    def test_gives_up_after_repeated_collisions(self, build_order, monkeypatch):
        existing = build_order()
        current_domain.repository_for(Order).add(existing)
        monkeypatch.setattr(numbering, "_candidate", lambda: existing.order_number)

        with pytest.raises(ConflictError):
            generate_order_number()
