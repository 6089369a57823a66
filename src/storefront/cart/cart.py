"""Cart: the shopping cart collaborator consumed at checkout.

Checkout only needs two capabilities from it: read the user's current items
and cart-level discount, and clear the cart once an order has been placed.
"""

from datetime import UTC, datetime

from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, HasMany, Identifier, Integer

from storefront.domain import storefront


@storefront.entity(part_of="Cart")
class CartItem:
    product_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)


@storefront.aggregate
class Cart:
    user_id = Identifier(required=True, unique=True)
    items = HasMany(CartItem)
    discount = Float(default=0.0, min_value=0.0)
    updated_at = DateTime()

    @classmethod
    def create(cls, user_id, discount=0.0):
        return cls(user_id=user_id, discount=discount, updated_at=datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        return not self.items

    def add_item(self, product_id, quantity):
        """Add a product, or increase its quantity if already in the cart."""
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

        existing = next((i for i in self.items if str(i.product_id) == str(product_id)), None)
        if existing:
            existing.quantity += quantity
        else:
            self.add_items(CartItem(product_id=product_id, quantity=quantity))
        self.updated_at = datetime.now(UTC)

    def clear(self):
        for item in list(self.items):
            self.remove_items(item)
        self.discount = 0.0
        self.updated_at = datetime.now(UTC)


@storefront.repository(part_of=Cart)
class CartRepository:
    def find_for_user(self, user_id) -> Cart | None:
        carts = self._dao.query.filter(user_id=str(user_id)).all().items
        return carts[0] if carts else None
