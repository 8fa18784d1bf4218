from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

# Stored documents use snake_case field names; the JSON API speaks camelCase.


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC so they compare with stored, tz-aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )


class PaymentMethod(str, Enum):
    COD = "COD"
    BANK_DEPOSIT = "BANK_DEPOSIT"


class VoucherType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ACTIVATED = "ACTIVATED"
    DEACTIVATED = "DEACTIVATED"
    DELETED = "DELETED"
    VALIDATED = "VALIDATED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    REDEEMED = "REDEEMED"
    EXPIRED = "EXPIRED"


class ActorType(str, Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"
    SYSTEM = "SYSTEM"


class MovementType(str, Enum):
    SALE = "sale"
    RESTORE = "restore"


# Each class below => one collection, lowercased plural name

class Product(ApiModel):
    id: str
    name: str
    description: Optional[str] = None
    price_cents: int = Field(ge=0)
    currency: str = "PKR"
    stock_quantity: int = 0
    category_ids: list[str] = []
    image: Optional[str] = None


class Voucher(ApiModel):
    id: str
    code: str
    type: VoucherType
    value: int = 0
    min_order_value_cents: int = 0
    max_discount_cents: Optional[int] = None
    start_date: datetime
    expiry_date: datetime
    usage_limit_global: Optional[int] = None
    usage_limit_per_user: Optional[int] = None
    used_count: int = 0
    applicable_product_ids: list[str] = []
    applicable_category_ids: list[str] = []
    is_active: bool = True
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    normalize_dates = field_validator("start_date", "expiry_date", "deleted_at", "created_at")(as_utc)


class Media(ApiModel):
    id: str
    filename: str
    mime_type: str
    path: str
    delivery_url: Optional[str] = None


class OrderItem(ApiModel):
    product_id: str
    product_name: str
    quantity: int
    unit_cents: int


class StatusHistoryEntry(ApiModel):
    status: OrderStatus
    created_at: datetime


class Order(ApiModel):
    id: str
    status: OrderStatus = OrderStatus.PENDING
    idempotency_key: Optional[str] = None
    customer_email: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_user_id: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_address_line1: Optional[str] = None
    shipping_address_line2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.COD
    payment_proof_media_id: Optional[str] = None
    items: list[OrderItem]
    subtotal_cents: int
    shipping_cents: int
    discount_cents: int = 0
    total_cents: int
    currency: str
    voucher_code: Optional[str] = None
    discount_type: Optional[VoucherType] = None
    status_history: list[StatusHistoryEntry] = []
    created_at: datetime
    updated_at: datetime


class Customer(ApiModel):
    """Whoever is checking out: a guest (email only) or a signed-in user."""
    email: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def usage_key(self) -> Optional[str]:
        if self.user_id:
            return f"user:{self.user_id}"
        if self.email:
            return f"email:{self.email.strip().lower()}"
        return None


# Request / response bodies

class CartItem(ApiModel):
    product_id: str
    quantity: int


class QuoteRequest(ApiModel):
    items: list[CartItem]
    voucher_code: Optional[str] = None


class QuoteLine(ApiModel):
    product_id: str
    product_name: str
    quantity: int
    unit_cents: int
    line_total_cents: int


class Quote(ApiModel):
    items: list[QuoteLine]
    subtotal_cents: int
    shipping_cents: int
    discount_cents: int = 0
    total_cents: int
    currency: str
    voucher_code: Optional[str] = None
    discount_type: Optional[VoucherType] = None


class CheckoutRequest(ApiModel):
    customer_email: EmailStr
    customer_phone: str = Field(min_length=1)
    customer_name: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_address_line1: Optional[str] = None
    shipping_address_line2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.COD
    payment_proof_media_id: Optional[str] = None
    items: list[CartItem]
    voucher_code: Optional[str] = None


class CheckoutResponse(ApiModel):
    id: str


class VoucherValidateRequest(ApiModel):
    code: str
    items: list[CartItem]
    customer_email: Optional[str] = None


class VoucherValidateResponse(ApiModel):
    valid: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    voucher_id: Optional[str] = None
    code: Optional[str] = None
    type: Optional[VoucherType] = None
    discount_cents: Optional[int] = None
    shipping_cents: Optional[int] = None
    subtotal_cents: Optional[int] = None
    total_cents: Optional[int] = None
    currency: Optional[str] = None


class VoucherCreate(ApiModel):
    code: str = Field(min_length=1)
    type: VoucherType
    # PERCENTAGE: 1-100, FIXED_AMOUNT: cents, FREE_SHIPPING: ignored
    value: int = Field(ge=0, default=0)
    min_order_value_cents: int = Field(ge=0, default=0)
    max_discount_cents: Optional[int] = Field(ge=0, default=None)
    start_date: datetime
    expiry_date: datetime
    usage_limit_global: Optional[int] = Field(ge=1, default=None)
    usage_limit_per_user: Optional[int] = Field(ge=1, default=None)
    applicable_product_ids: list[str] = []
    applicable_category_ids: list[str] = []
    is_active: bool = True

    normalize_dates = field_validator("start_date", "expiry_date")(as_utc)


class VoucherStats(ApiModel):
    total_redemptions: int
    discount_given_cents: int
    remaining_uses: Optional[int] = None
    used_count: int
    usage_limit_global: Optional[int] = None


class OrderStatusUpdate(ApiModel):
    status: OrderStatus


class VoucherUpdate(ApiModel):
    """Partial update; fields left out keep their stored value."""
    code: Optional[str] = Field(min_length=1, default=None)
    type: Optional[VoucherType] = None
    value: Optional[int] = Field(ge=0, default=None)
    min_order_value_cents: Optional[int] = Field(ge=0, default=None)
    max_discount_cents: Optional[int] = Field(ge=0, default=None)
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    usage_limit_global: Optional[int] = Field(ge=1, default=None)
    usage_limit_per_user: Optional[int] = Field(ge=1, default=None)
    applicable_product_ids: Optional[list[str]] = None
    applicable_category_ids: Optional[list[str]] = None
    is_active: Optional[bool] = None

    normalize_dates = field_validator("start_date", "expiry_date")(as_utc)


class VoucherStatusUpdate(ApiModel):
    is_active: bool


class VoucherStatusFilter(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    UPCOMING = "upcoming"


class VoucherSortField(str, Enum):
    CREATED_AT = "createdAt"
    CODE = "code"
    EXPIRY_DATE = "expiryDate"
    USED_COUNT = "usedCount"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class VoucherPage(ApiModel):
    data: list[Voucher]
    total: int


class OrderPage(ApiModel):
    data: list[Order]
    total: int


class DeleteResponse(ApiModel):
    success: bool = True
