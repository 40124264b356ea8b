"""
Order pricing

Turns a cart, an optional coupon code and already-fetched catalog data
into an OrderSummary. Nothing here touches the database: products and
coupons come in through lookup callables and the current time is passed
in, so the same inputs always price the same way.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from errors import (
    CouponNotFound,
    EmptyCart,
    InvalidQuantity,
    MinimumPurchaseNotMet,
    ProductInactive,
    ProductNotFound,
)
from schemas import Coupon, Product

FREE_SHIPPING_THRESHOLD = Decimal("299.00")
FLAT_SHIPPING_FEE = Decimal("15.90")
CENTS = Decimal("0.01")

ProductLookup = Callable[[str], Optional[Product]]
CouponLookup = Callable[[str], Optional[Coupon]]


class LineItemRequest(BaseModel):
    product_id: str
    quantity: Optional[int] = None


class PricedLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    line_items: Tuple[PricedLineItem, ...]
    subtotal: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    total: Decimal
    applied_coupon_id: Optional[str] = None
    applied_coupon_code: Optional[str] = None


def compute_line_items(
    cart_items: Sequence[LineItemRequest], product_lookup: ProductLookup
) -> List[PricedLineItem]:
    if not cart_items:
        raise EmptyCart()

    priced = []
    for item in cart_items:
        quantity = 1 if item.quantity is None else item.quantity
        if quantity <= 0:
            raise InvalidQuantity(item.product_id, quantity)

        product = product_lookup(item.product_id)
        if product is None:
            raise ProductNotFound(item.product_id)
        if not product.is_active:
            raise ProductInactive(item.product_id, product.name)

        priced.append(
            PricedLineItem(
                product_id=item.product_id,
                quantity=quantity,
                unit_price=product.price,
                line_total=quantity * product.price,
            )
        )
    return priced


def compute_shipping_fee(subtotal: Decimal) -> Decimal:
    if subtotal > FREE_SHIPPING_THRESHOLD:
        return Decimal("0.00")
    return FLAT_SHIPPING_FEE


def resolve_coupon(
    code: str, subtotal: Decimal, now: datetime, coupon_lookup: CouponLookup
) -> Tuple[Coupon, Decimal]:
    """Find a usable coupon and work out its discount on ``subtotal``.

    Usage caps and first-order eligibility are left to the caller, which
    has to update the usage counter atomically anyway.
    """
    normalized = code.strip().upper()
    coupon = coupon_lookup(normalized)
    if coupon is None or not coupon.is_active or coupon.expires_at < now:
        raise CouponNotFound(normalized)

    if coupon.min_purchase is not None and subtotal < coupon.min_purchase:
        raise MinimumPurchaseNotMet(normalized, coupon.min_purchase)

    if coupon.discount_type == "percentage":
        discount = subtotal * coupon.value / 100
        if coupon.max_discount_amount is not None and discount > coupon.max_discount_amount:
            discount = coupon.max_discount_amount
    else:
        # May exceed the subtotal; the total is allowed to go negative
        discount = coupon.value

    return coupon, discount.quantize(CENTS, rounding=ROUND_HALF_UP)


def price_order(
    cart_items: Sequence[LineItemRequest],
    coupon_code: Optional[str],
    product_lookup: ProductLookup,
    coupon_lookup: CouponLookup,
    now: datetime,
) -> OrderSummary:
    line_items = compute_line_items(cart_items, product_lookup)
    subtotal = sum((item.line_total for item in line_items), Decimal("0.00"))
    shipping_fee = compute_shipping_fee(subtotal)

    discount = Decimal("0.00")
    coupon = None
    if coupon_code:
        coupon, discount = resolve_coupon(coupon_code, subtotal, now, coupon_lookup)

    return OrderSummary(
        line_items=tuple(line_items),
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        discount_amount=discount,
        total=subtotal + shipping_fee - discount,
        applied_coupon_id=coupon.id if coupon else None,
        applied_coupon_code=coupon.code if coupon else None,
    )
