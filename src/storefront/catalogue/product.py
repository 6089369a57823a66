"""Product: the catalogue collaborator as seen by order fulfillment.

Catalogue management (CRUD, categories, images) happens elsewhere; this
aggregate only carries what checkout reads: whether the product is on sale,
its list price, and the active per-unit discount. Stock is not stored here:
physical quantities belong to ``ProductStock`` in the inventory package.
"""

from protean.fields import Boolean, Float, String

from storefront.domain import storefront


@storefront.aggregate
class Product:
    name = String(required=True, max_length=255)
    sku = String(max_length=50)
    price = Float(required=True, min_value=0.0)
    discount = Float(default=0.0, min_value=0.0)
    currency = String(max_length=3, default="USD")
    is_active = Boolean(default=True)

    @property
    def unit_price(self) -> float:
        """List price minus the active discount, never below zero."""
        return max(round(self.price - (self.discount or 0.0), 2), 0.0)

    @property
    def unit_discount(self) -> float:
        return round(self.price - self.unit_price, 2)
