"""
Pricing errors

Every failure of the order pricing engine is a PricingError. Each kind
carries the HTTP status the API answers with, so routes can simply let
them propagate.
"""

from decimal import Decimal
from typing import Any, Optional


class PricingError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EmptyCart(PricingError):
    def __init__(self):
        super().__init__("Order must contain at least one item")


class InvalidQuantity(PricingError):
    def __init__(self, product_ref: Any, quantity: int):
        super().__init__(f"Invalid quantity {quantity} for product {product_ref}")
        self.product_ref = product_ref
        self.quantity = quantity


class ProductNotFound(PricingError):
    status_code = 404

    def __init__(self, product_ref: Any):
        super().__init__(f"Product {product_ref} not found")
        self.product_ref = product_ref


class ProductInactive(PricingError):
    def __init__(self, product_ref: Any, name: Optional[str] = None):
        super().__init__(f"Product {name or product_ref} is not available")
        self.product_ref = product_ref


class CouponNotFound(PricingError):
    # Missing, inactive and expired coupons all end up here
    def __init__(self, code: str):
        super().__init__("Invalid or expired coupon")
        self.code = code


class MinimumPurchaseNotMet(PricingError):
    def __init__(self, code: str, minimum: Decimal):
        super().__init__(f"This coupon requires a minimum purchase of {minimum:.2f}")
        self.code = code
        self.minimum = minimum


class CouponUsageExhausted(PricingError):
    def __init__(self, code: str):
        super().__init__("Coupon usage limit reached")
        self.code = code
