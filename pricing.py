"""
Order and cart pricing.

Amounts are accumulated as Decimal and rounded half away from zero to two
places once per derived field, then handed back as floats for storage.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Protocol

from pydantic import BaseModel

from schemas import Coupon

TAX_RATE = Decimal("0.10")
FREE_SHIPPING_THRESHOLD = Decimal("100")
FLAT_SHIPPING = Decimal("10")
CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round2(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def unit_price(product: dict, variant: dict) -> Decimal:
    """Variant-specific price when set, else the product's base price."""
    override = variant.get("price")
    if override is not None:
        return to_decimal(override)
    return to_decimal(product["price"])


class Pricing(BaseModel):
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total: float


class CouponResolver(Protocol):
    def discount_for(self, coupon: Optional[Coupon], subtotal: Decimal) -> Decimal:
        ...


class StaticCouponResolver:
    """Recognises a fixed set of codes; anything else earns no discount."""

    def __init__(self, codes: Iterable[str] = ("SAVE10",), percent: Decimal = Decimal("0.10"), flat: Decimal = Decimal("10")):
        self.codes = {code.upper() for code in codes}
        self.percent = percent
        self.flat = flat

    def discount_for(self, coupon: Optional[Coupon], subtotal: Decimal) -> Decimal:
        if coupon is None or coupon.code.upper() not in self.codes:
            return Decimal("0")
        if coupon.type == "percentage":
            return round2(subtotal * self.percent)
        amount = to_decimal(coupon.discount) if coupon.discount is not None else self.flat
        return round2(min(amount, subtotal))


class PricingEngine:
    def __init__(self, coupons: Optional[CouponResolver] = None):
        self.coupons = coupons or StaticCouponResolver()

    def price(self, lines: Iterable[tuple], coupon: Optional[Coupon] = None) -> Pricing:
        """Price (unit_price, quantity) pairs."""
        subtotal = round2(sum((to_decimal(price) * quantity for price, quantity in lines), Decimal("0")))
        tax = round2(subtotal * TAX_RATE)
        shipping = Decimal("0") if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
        discount = round2(self.coupons.discount_for(coupon, subtotal))
        total = round2(subtotal + tax + shipping - discount)
        return Pricing(
            subtotal=float(subtotal),
            tax=float(tax),
            shipping=float(round2(shipping)),
            discount=float(discount),
            total=float(total),
        )
