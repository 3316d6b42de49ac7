from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP

from .conf import discount_setting
from .models import Discount


def _quantum() -> Decimal:
    return Decimal(str(discount_setting("AMOUNT_QUANTUM")))


def compute_discount_amount(discount: Discount, cart_amount) -> Decimal:
    """
    Money off `cart_amount` for an already-eligible discount.

    Percentage discounts are capped by max_discount when it is nonzero; fixed
    discounts never exceed the cart. The value is clamped first and rounded
    once (half up, to AMOUNT_QUANTUM); where rounding up would pass the cart
    or the cap it rounds down instead, so the result is always a whole
    quantum within [0, limit].
    """
    amount = max(Decimal("0"), Decimal(cart_amount))
    limit = amount

    if discount.discount_type == Discount.DiscountType.PERCENTAGE:
        disc = (amount * Decimal(discount.discount_value)) / Decimal(100)
        if discount.max_discount and Decimal(discount.max_discount) > 0:
            limit = min(limit, Decimal(discount.max_discount))
    else:  # FIXED
        disc = Decimal(discount.discount_value)

    disc = min(max(Decimal("0"), disc), limit)

    rounded = disc.quantize(_quantum(), rounding=ROUND_HALF_UP)
    if rounded > limit:
        rounded = disc.quantize(_quantum(), rounding=ROUND_FLOOR)
    return rounded
