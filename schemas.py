"""
Database Schemas

MongoDB collection schemas for the storefront, defined as Pydantic models.
These schemas are used for data validation in the application.

Each model represents a collection; the collection name is the lowercase
model name:
- Product -> "product" collection
- Coupon -> "coupon" collection
- Order -> "order" collection
- OrderItem -> "orderitem" collection
- Delivery -> "delivery" collection
- Address -> "address" collection

Money is declared as Decimal. It is stored as a decimal string and read
back exactly.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, FrozenSet, Literal, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the store as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PROCESSING_PAYMENT = "PROCESSING_PAYMENT"
    PAID = "PAID"
    STOCK_SEPARATION = "STOCK_SEPARATION"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset(
        {OrderStatus.PROCESSING_PAYMENT, OrderStatus.PAID, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING_PAYMENT: frozenset(
        {OrderStatus.PAID, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAID: frozenset({OrderStatus.STOCK_SEPARATION, OrderStatus.CANCELLED}),
    OrderStatus.STOCK_SEPARATION: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class DeliveryStatus(str, Enum):
    AWAITING_SHIPMENT = "AWAITING_SHIPMENT"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    LOST = "LOST"
    RETURNED = "RETURNED"


DELIVERY_STATUS_TRANSITIONS: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    DeliveryStatus.AWAITING_SHIPMENT: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.LOST}),
    DeliveryStatus.IN_TRANSIT: frozenset(
        {
            DeliveryStatus.OUT_FOR_DELIVERY,
            DeliveryStatus.DELIVERED,
            DeliveryStatus.LOST,
            DeliveryStatus.RETURNED,
        }
    ),
    DeliveryStatus.OUT_FOR_DELIVERY: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.LOST, DeliveryStatus.RETURNED}
    ),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.LOST: frozenset(),
    DeliveryStatus.RETURNED: frozenset(),
}


def can_transition(current: Enum, new: Enum) -> bool:
    """Check a status move against the transition table of its enum.

    Staying in the same status is not a transition and is rejected.
    """
    if isinstance(current, OrderStatus):
        table = ORDER_STATUS_TRANSITIONS
    elif isinstance(current, DeliveryStatus):
        table = DELIVERY_STATUS_TRANSITIONS
    else:
        raise TypeError(f"No transition table for {type(current).__name__}")
    return new in table[current]


PaymentMethod = Literal["CREDIT_CARD", "PIX", "BOLETO", "ONLINE_DEBIT", "DIGITAL_WALLET"]


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    id: Optional[str] = Field(None, description="Document id, filled in on reads")
    name: str = Field(..., max_length=120, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    model: str = Field(..., description="Product model")
    price: Decimal = Field(..., ge=0, decimal_places=2, description="Unit price")
    image_url: Optional[str] = Field(None, description="Product image")
    is_active: bool = Field(True, description="Whether the product can be ordered")


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    id: Optional[str] = Field(None, description="Document id, filled in on reads")
    code: str = Field(..., max_length=20, description="Unique coupon code, stored uppercased")
    description: str = Field("", max_length=255, description="Shown to customers")
    discount_type: Literal["percentage", "fixed"] = Field(..., description="Type of discount")
    value: Decimal = Field(..., gt=0, description="Discount value: percent (0-100] or fixed amount")
    max_discount_amount: Optional[Decimal] = Field(None, gt=0, description="Cap for percentage discounts")
    min_purchase: Optional[Decimal] = Field(None, ge=0, description="Minimum subtotal to be eligible")
    expires_at: UtcDatetime = Field(..., description="UTC expiry datetime")
    is_active: bool = Field(True, description="Whether this coupon is active")
    usage_type: Literal["general", "first_order", "promotional"] = Field("general")
    max_uses: Optional[int] = Field(None, ge=1, description="Maximum total redemptions, None is unlimited")
    current_uses: int = Field(0, ge=0, description="Redemptions so far")

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _check_percentage(self):
        if self.discount_type == "percentage" and self.value > 100:
            raise ValueError("Percentage discount must be between 0 and 100")
        return self


class OrderItem(BaseModel):
    """
    Order items collection schema
    Collection name: "orderitem"
    """
    order_id: str
    product_id: str
    position: int = Field(..., ge=0, description="Position in the original cart")
    quantity: int = Field(..., gt=0)
    unit_price: Decimal
    line_total: Decimal


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    id: Optional[str] = None
    user_id: str
    address_id: str
    coupon_id: Optional[str] = None
    ordered_at: UtcDatetime
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    subtotal: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    total: Decimal
    payment_method: PaymentMethod = "CREDIT_CARD"


class Delivery(BaseModel):
    """
    Deliveries collection schema
    Collection name: "delivery"
    """
    order_id: str
    estimated_at: UtcDatetime
    delivered_at: Optional[UtcDatetime] = None
    tracking_code: Optional[str] = None
    carrier: str = "TechStore Express"
    status: DeliveryStatus = DeliveryStatus.AWAITING_SHIPMENT



class Address(BaseModel):
    """
    Addresses collection schema
    Collection name: "address"
    """
    id: Optional[str] = Field(None, description="Document id, filled in on reads")
    user_id: str = Field(..., min_length=1, description="Owner of the address")
    postal_code: str = Field(..., pattern=r"^\d{5}-?\d{3}$", description="CEP, 00000-000 or 00000000")
    street: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)
    complement: Optional[str] = None
    district: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., pattern=r"^[A-Za-z]{2}$", description="Two-letter state code")
    label: Optional[str] = Field(None, max_length=50, description="Nickname such as Home or Work")
    is_principal: bool = Field(False, description="Default shipping address for the user")

    @field_validator("state")
    @classmethod
    def _upper_state(cls, value: str) -> str:
        return value.upper()
