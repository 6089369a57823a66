"""Checkout pricing.

Shipping is tiered on the merchandise subtotal, tax is a flat 10% of it,
and the cart-level discount comes off the grand total. Amounts are rounded
to cents at each step so stored totals are exactly what the customer saw.
"""

TAX_RATE = 0.10
FREE_SHIPPING_THRESHOLD = 100.0
REDUCED_SHIPPING_THRESHOLD = 50.0
REDUCED_SHIPPING_COST = 5.0
STANDARD_SHIPPING_COST = 10.0


def _cents(value: float) -> float:
    return round(value, 2)


def price_line(product_id, name, quantity: int, price: float, unit_discount: float = 0.0) -> dict:
    """Snapshot one cart line at today's price."""
    unit_discount = min(max(unit_discount, 0.0), price)
    return {
        "product_id": str(product_id),
        "name": name,
        "quantity": quantity,
        "price": _cents(price),
        "discount": _cents(unit_discount * quantity),
        "final_price": _cents((price - unit_discount) * quantity),
        "subtotal": _cents(price * quantity),
    }


def shipping_for(subtotal: float) -> float:
    if subtotal >= FREE_SHIPPING_THRESHOLD:
        return 0.0
    if subtotal >= REDUCED_SHIPPING_THRESHOLD:
        return REDUCED_SHIPPING_COST
    return STANDARD_SHIPPING_COST


def compute_pricing(lines: list[dict], discount: float = 0.0, currency: str = "USD") -> dict:
    subtotal = _cents(sum(line["final_price"] for line in lines))
    shipping = shipping_for(subtotal)
    tax = _cents(subtotal * TAX_RATE)
    discount = _cents(min(max(discount or 0.0, 0.0), subtotal + shipping + tax))
    total = _cents(subtotal + shipping + tax - discount)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "shipping": shipping,
        "discount": discount,
        "total": total,
        "currency": currency,
    }
