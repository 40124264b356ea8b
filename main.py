import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

import database
from database import (
    DatabaseUnavailable,
    count_documents,
    coupon_lookup,
    create_document,
    delete_document,
    delete_documents,
    get_document,
    get_documents,
    product_lookup,
    record_coupon_use,
    to_object_id,
    update_document,
    update_documents,
)
from errors import CouponNotFound, CouponUsageExhausted, PricingError
from log_config import configure_logging
from pricing import LineItemRequest, price_order, resolve_coupon
from schemas import (
    Address,
    Coupon,
    Delivery,
    DeliveryStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
    can_transition,
)

configure_logging()
logger = structlog.get_logger(__name__)

DELIVERY_ESTIMATE = timedelta(days=7)

STOREFRONT_COLLECTIONS = ("product", "coupon", "order", "orderitem", "delivery", "address")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes()
    logger.info("storefront_started", database=database.db is not None)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_clock():
    return lambda: datetime.now(timezone.utc)


def require_admin(api_key: Optional[str] = Header(None, alias="x-api-key")):
    admin_key = os.getenv("ADMIN_API_KEY")
    if not admin_key or api_key != admin_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.exception_handler(PricingError)
async def pricing_error_handler(request: Request, exc: PricingError):
    logger.info("pricing_rejected", path=request.url.path, error=type(exc).__name__, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(DatabaseUnavailable)
async def database_unavailable_handler(request: Request, exc: DatabaseUnavailable):
    logger.error("database_unavailable", path=request.url.path)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/")
def read_root():
    return {"message": "Storefront Backend Running"}


@app.get("/test")
def storefront_diagnostics():
    report = {
        "backend": "running",
        "database": None,
        "connected": False,
        "collections": {},
    }

    db = database.db
    if db is None:
        return report

    report["database"] = db.name
    try:
        existing = set(db.list_collection_names())
        for name in STOREFRONT_COLLECTIONS:
            present = name in existing
            report["collections"][name] = {
                "documents": db[name].count_documents({}) if present else 0,
                "indexes": sorted(db[name].index_information()) if present else [],
            }
        report["connected"] = True
    except PyMongoError as exc:
        logger.warning("diagnostics_failed", error=str(exc))
        report["error"] = str(exc)[:100]

    return report

# ---------------------- Product API ----------------------
class ProductResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    model: str
    price: Decimal
    image_url: Optional[str]
    is_active: bool


class CreateProductRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    model: str = Field(..., min_length=1)
    price: Decimal = Field(..., gt=0, decimal_places=2)
    image_url: Optional[str] = None


class UpdateProductRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    model: Optional[str] = Field(None, min_length=1)
    price: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


@app.get("/api/products", response_model=List[ProductResponse])
def list_products():
    return get_documents("product", {"is_active": True}, sort=[("name", 1)])


@app.get("/api/products/{product_id}", response_model=ProductResponse)
def get_product(product_id: str):
    product = get_document("product", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/api/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: CreateProductRequest):
    doc = Product(**payload.model_dump())
    product_id = create_document("product", doc)
    logger.info("product_created", product_id=product_id, name=doc.name)
    product = ProductResponse(id=product_id, **doc.model_dump(exclude={"id"}))
    return {"message": "Product created", "product": product}


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: UpdateProductRequest):
    changes = payload.model_dump(exclude_unset=True)
    if get_document("product", product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")
    product = update_document("product", product_id, changes) if changes else get_document("product", product_id)
    return {"message": "Product updated", "product": ProductResponse.model_validate(product)}


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def deactivate_product(product_id: str):
    product = update_document("product", product_id, {"is_active": False})
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("product_deactivated", product_id=product_id)
    return {"message": "Product deactivated"}

# ---------------------- Coupon API ----------------------
class CreateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=20, description="Unique code")
    description: str = Field("", max_length=255)
    discount_type: str = Field(..., pattern="^(percentage|fixed)$")
    value: Decimal = Field(..., gt=0)
    max_discount_amount: Optional[Decimal] = Field(None, gt=0)
    min_purchase: Optional[Decimal] = Field(None, ge=0)
    expires_at: datetime
    is_active: bool = True
    usage_type: str = Field("general", pattern="^(general|first_order|promotional)$")
    max_uses: Optional[int] = Field(None, ge=1)


class CouponResponse(BaseModel):
    id: str
    code: str
    description: str
    discount_type: str
    value: Decimal
    max_discount_amount: Optional[Decimal]
    min_purchase: Optional[Decimal]
    expires_at: datetime
    is_active: bool
    usage_type: str
    max_uses: Optional[int]
    current_uses: int


class ValidateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1)
    purchase_amount: Decimal = Field(..., ge=0)


class ValidateCouponResponse(BaseModel):
    valid: bool
    coupon: CouponResponse
    discount_amount: Decimal
    final_amount: Decimal


@app.post("/api/coupons", response_model=CouponResponse, status_code=201, dependencies=[Depends(require_admin)])
def create_coupon(payload: CreateCouponRequest):
    # Normalize code
    code = payload.code.strip().upper()

    # Check for duplicates
    if coupon_lookup(code) is not None:
        raise HTTPException(status_code=409, detail="Coupon code already exists")

    # Validate percent range
    if payload.discount_type == "percentage" and not (0 < payload.value <= 100):
        raise HTTPException(status_code=400, detail="Percent discount must be between 0 and 100")

    doc = Coupon(**payload.model_dump(exclude={"code"}), code=code)
    coupon_id = create_document("coupon", doc)
    logger.info("coupon_created", coupon_id=coupon_id, code=code)

    return CouponResponse(id=coupon_id, **doc.model_dump(exclude={"id"}))


@app.get("/api/coupons", response_model=List[CouponResponse])
def list_coupons(user_id: Optional[str] = None, clock=Depends(get_clock)):
    now = clock()
    coupons = [Coupon.model_validate(c) for c in get_documents("coupon", {"is_active": True})]
    available = [c for c in coupons if c.expires_at >= now]

    # first_order coupons are only offered to customers without orders
    if user_id and count_documents("order", {"user_id": user_id}) > 0:
        available = [c for c in available if c.usage_type != "first_order"]

    return sorted(available, key=lambda c: c.expires_at)


@app.post("/api/coupons/validate", response_model=ValidateCouponResponse)
def validate_coupon(payload: ValidateCouponRequest, clock=Depends(get_clock)):
    try:
        coupon, discount = resolve_coupon(payload.code, payload.purchase_amount, clock(), coupon_lookup)
    except CouponNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message)

    return ValidateCouponResponse(
        valid=True,
        coupon=CouponResponse.model_validate(coupon.model_dump()),
        discount_amount=discount,
        final_amount=payload.purchase_amount - discount,
    )

# ---------------------- Address API ----------------------
class CreateAddressRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    postal_code: str = Field(..., pattern=r"^\d{5}-?\d{3}$")
    street: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)
    complement: Optional[str] = None
    district: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., pattern=r"^[A-Za-z]{2}$")
    label: Optional[str] = Field(None, max_length=50)
    is_principal: bool = False


class UpdateAddressRequest(BaseModel):
    postal_code: Optional[str] = Field(None, pattern=r"^\d{5}-?\d{3}$")
    street: Optional[str] = Field(None, min_length=1)
    number: Optional[str] = Field(None, min_length=1)
    complement: Optional[str] = None
    district: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, pattern=r"^[A-Za-z]{2}$")
    label: Optional[str] = Field(None, max_length=50)
    is_principal: Optional[bool] = None


class AddressResponse(Address):
    id: str


def _clear_principal(user_id: str, keep: Optional[str] = None) -> None:
    query = {"user_id": user_id, "is_principal": True}
    if keep is not None:
        query["_id"] = {"$ne": to_object_id(keep)}
    update_documents("address", query, {"is_principal": False})


@app.post("/api/addresses", response_model=AddressResponse, status_code=201)
def create_address(payload: CreateAddressRequest):
    doc = Address(**payload.model_dump())

    # Only one principal address per user
    if doc.is_principal:
        _clear_principal(doc.user_id)

    address_id = create_document("address", doc)
    logger.info("address_created", address_id=address_id, user_id=doc.user_id)
    return AddressResponse(id=address_id, **doc.model_dump(exclude={"id"}))


@app.get("/api/addresses", response_model=List[AddressResponse])
def list_addresses(user_id: str):
    return get_documents(
        "address", {"user_id": user_id}, sort=[("is_principal", -1), ("created_at", -1), ("_id", -1)]
    )


@app.get("/api/addresses/{address_id}", response_model=AddressResponse)
def get_address(address_id: str, user_id: str):
    address = get_document("address", address_id, user_id=user_id)
    if address is None:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


@app.put("/api/addresses/{address_id}", response_model=AddressResponse)
def update_address(address_id: str, user_id: str, payload: UpdateAddressRequest):
    address = get_document("address", address_id, user_id=user_id)
    if address is None:
        raise HTTPException(status_code=404, detail="Address not found")

    # complement and label may be cleared, the rest only replaced
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in ("complement", "label")
    }
    if not changes:
        return address

    if "state" in changes:
        changes["state"] = changes["state"].upper()
    if changes.get("is_principal"):
        _clear_principal(user_id, keep=address_id)

    return update_document("address", address_id, changes, user_id=user_id)


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, user_id: str):
    if not delete_document("address", address_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Address not found")
    logger.info("address_deleted", address_id=address_id, user_id=user_id)
    return {"message": "Address deleted"}

# ---------------------- Order API ----------------------
class CreateOrderRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    address_id: str = Field(..., min_length=1)
    payment_method: PaymentMethod = "CREDIT_CARD"
    items: List[LineItemRequest]
    coupon_code: Optional[str] = None


class PlacedOrder(BaseModel):
    id: str
    status: OrderStatus
    subtotal: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    total: Decimal
    payment_method: str
    items: int
    estimated_delivery: datetime


class CreateOrderResponse(BaseModel):
    message: str
    order: PlacedOrder


class OrderResponse(Order):
    id: str
    items: List[OrderItem] = []


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


def _load_order(order_id: str, user_id: Optional[str] = None) -> Optional[OrderResponse]:
    filters = {"user_id": user_id} if user_id else {}
    order = get_document("order", order_id, **filters)
    if order is None:
        return None
    items = get_documents("orderitem", {"order_id": order["id"]}, sort=[("position", 1)])
    return OrderResponse.model_validate({**order, "items": items})


def _discard_order(order_id: str) -> None:
    delete_documents("orderitem", {"order_id": order_id})
    delete_documents("delivery", {"order_id": order_id})
    delete_document("order", order_id)
    logger.warning("order_discarded", order_id=order_id)


@app.post("/api/orders", response_model=CreateOrderResponse, status_code=201)
def create_order(payload: CreateOrderRequest, clock=Depends(get_clock)):
    now = clock()
    if get_document("address", payload.address_id, user_id=payload.user_id) is None:
        raise HTTPException(status_code=404, detail="Address not found")

    summary = price_order(payload.items, payload.coupon_code, product_lookup, coupon_lookup, now)

    order = Order(
        user_id=payload.user_id,
        address_id=payload.address_id,
        coupon_id=summary.applied_coupon_id,
        ordered_at=now,
        subtotal=summary.subtotal,
        shipping_fee=summary.shipping_fee,
        discount_amount=summary.discount_amount,
        total=summary.total,
        payment_method=payload.payment_method,
    )
    order_id = create_document("order", order)

    # The coupon is counted last so a failed write never consumes a use
    try:
        for position, item in enumerate(summary.line_items):
            create_document("orderitem", OrderItem(order_id=order_id, position=position, **item.model_dump()))

        delivery = Delivery(order_id=order_id, estimated_at=now + DELIVERY_ESTIMATE)
        create_document("delivery", delivery)

        if summary.applied_coupon_id and not record_coupon_use(summary.applied_coupon_id):
            raise CouponUsageExhausted(summary.applied_coupon_code)
    except Exception:
        _discard_order(order_id)
        raise

    logger.info(
        "order_created",
        order_id=order_id,
        user_id=payload.user_id,
        items=len(summary.line_items),
        total=str(summary.total),
        coupon=summary.applied_coupon_code,
    )

    return {
        "message": "Order created",
        "order": {
            "id": order_id,
            "status": order.status,
            "subtotal": summary.subtotal,
            "shipping_fee": summary.shipping_fee,
            "discount_amount": summary.discount_amount,
            "total": summary.total,
            "payment_method": order.payment_method,
            "items": len(summary.line_items),
            "estimated_delivery": delivery.estimated_at,
        },
    }


@app.get("/api/orders", response_model=List[OrderResponse])
def list_orders(user_id: str):
    orders = get_documents("order", {"user_id": user_id}, sort=[("ordered_at", -1)])
    return [_load_order(order["id"]) for order in orders]


@app.get("/api/orders/admin/all", response_model=List[OrderResponse], dependencies=[Depends(require_admin)])
def list_all_orders(limit: int = Query(100, ge=1, le=500)):
    orders = get_documents("order", sort=[("ordered_at", -1)], limit=limit)
    return [_load_order(order["id"]) for order in orders]


@app.get("/api/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, user_id: Optional[str] = None):
    order = _load_order(order_id, user_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest):
    order = get_document("order", order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    current = OrderStatus(order["status"])
    if not can_transition(current, payload.status):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot move order from {current.value} to {payload.status.value}",
        )

    if update_document("order", order_id, {"status": payload.status}, status=current) is None:
        raise HTTPException(status_code=409, detail="Order status changed concurrently, retry")
    logger.info("order_status_changed", order_id=order_id, old=current.value, new=payload.status.value)
    return {"message": "Order status updated", "order": {"id": order_id, "status": payload.status}}

# ---------------------- Delivery API ----------------------
class DeliveryResponse(Delivery):
    id: str


class UpdateDeliveryRequest(BaseModel):
    status: Optional[DeliveryStatus] = None
    tracking_code: Optional[str] = Field(None, min_length=1)
    carrier: Optional[str] = Field(None, min_length=1)
    estimated_at: Optional[datetime] = None


def _find_delivery(order_id: str) -> Optional[dict]:
    deliveries = get_documents("delivery", {"order_id": order_id}, limit=1)
    return deliveries[0] if deliveries else None


@app.get("/api/delivery/{order_id}", response_model=DeliveryResponse)
def get_delivery(order_id: str, user_id: Optional[str] = None):
    filters = {"user_id": user_id} if user_id else {}
    if get_document("order", order_id, **filters) is None:
        raise HTTPException(status_code=404, detail="Order not found")

    delivery = _find_delivery(order_id)
    if delivery is None:
        raise HTTPException(status_code=404, detail="Delivery information not found")
    return delivery


@app.put("/api/delivery/{order_id}", response_model=DeliveryResponse, dependencies=[Depends(require_admin)])
def update_delivery(order_id: str, payload: UpdateDeliveryRequest, clock=Depends(get_clock)):
    delivery = _find_delivery(order_id)
    if delivery is None:
        raise HTTPException(status_code=404, detail="Delivery not found")

    changes = payload.model_dump(exclude_none=True)
    if payload.status is not None:
        current = DeliveryStatus(delivery["status"])
        if not can_transition(current, payload.status):
            raise HTTPException(
                status_code=409,
                detail=f"Cannot move delivery from {current.value} to {payload.status.value}",
            )
        if payload.status == DeliveryStatus.DELIVERED:
            changes["delivered_at"] = clock()

    if not changes:
        return delivery

    updated = update_document("delivery", delivery["id"], changes, status=delivery["status"])
    if updated is None:
        raise HTTPException(status_code=409, detail="Delivery changed concurrently, retry")
    logger.info("delivery_updated", order_id=order_id, fields=sorted(changes))
    return updated


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
