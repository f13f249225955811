# schemas/commerce.py
# ============================================================================
# STOREFRONT BACKEND: COMMERCE SCHEMAS
# ============================================================================
# Purpose: Type-safe entity, snapshot and gateway payload definitions
#
# - CatalogEntry is the live, mutable product record
# - OrderLineSnapshot is frozen at checkout and never re-read from the catalog
# - WebhookPayload is the strict boundary schema for gateway callbacks
# ============================================================================

from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit decimal amount to integer minor units (half-up)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class ProductStatus(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    OUT_OF_STOCK = "out_of_stock"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AuditEventType(str, Enum):
    CHECKOUT_INITIATED = "CHECKOUT_INITIATED"
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    STOCK_RESTORED = "STOCK_RESTORED"


# ============================================================================
# SECTION 2: CATALOG & USERS
# ============================================================================

class CatalogEntry(BaseModel):
    """
    Live product record owned by the catalog store.
    The payment pipeline only reads price/stock/status and issues
    conditional decrements against it.
    """
    id: str
    title: str
    price: Decimal = Field(ge=0, decimal_places=2, description="Authoritative price in major units")
    stock: int = Field(ge=0)
    status: ProductStatus = ProductStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProductUpdate(BaseModel):
    """Admin edit of a catalog entry; unset fields are left untouched."""
    title: Optional[str] = Field(default=None, min_length=1)
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    stock: Optional[int] = Field(default=None, ge=0)
    status: Optional[ProductStatus] = None


class User(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole = UserRole.USER
    shipping_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def has_shipping_address(self) -> bool:
        return bool(self.shipping_address and self.shipping_address.strip())


# ============================================================================
# SECTION 3: CART & SNAPSHOTS
# ============================================================================

class CartLine(BaseModel):
    """Client-supplied cart line. Prices are never accepted from the client."""
    product_id: str
    quantity: int


class OrderLineSnapshot(BaseModel):
    """Catalog data frozen into an order at purchase time."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    title: str
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    @property
    def amount_in_cents(self) -> int:
        return to_minor_units(self.price) * self.quantity

    @classmethod
    def from_catalog(cls, entry: CatalogEntry, quantity: int) -> "OrderLineSnapshot":
        return cls(
            product_id=entry.id,
            title=entry.title,
            price=entry.price,
            quantity=quantity,
        )


def snapshot_total(items: List[OrderLineSnapshot]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


def snapshot_amount_in_cents(items: List[OrderLineSnapshot]) -> int:
    return sum(item.amount_in_cents for item in items)


# ============================================================================
# SECTION 4: ORDERS & PAYMENT SESSIONS
# ============================================================================

class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class PaymentInfo(BaseModel):
    """Gateway confirmation; transaction_id is the idempotency key."""
    transaction_id: str
    reference: str
    amount_in_cents: int
    currency: str
    gateway: str
    status: str


class Order(BaseModel):
    """Core order entity. Created Pending at checkout, never deleted."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    items: List[OrderLineSnapshot] = Field(min_length=1)
    total: Decimal = Field(ge=0)
    currency: str
    shipping_address: str
    status: OrderStatus = OrderStatus.PENDING
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    payment_reference: Optional[str] = None
    payment_info: Optional[PaymentInfo] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def pending(
        cls,
        user_id: str,
        items: List[OrderLineSnapshot],
        currency: str,
        shipping_address: str,
        note: str = "Order created at checkout",
    ) -> "Order":
        # total is always recomputed from the snapshot
        return cls(
            user_id=user_id,
            items=items,
            total=snapshot_total(items),
            currency=currency,
            shipping_address=shipping_address,
            status=OrderStatus.PENDING,
            status_history=[StatusHistoryEntry(status=OrderStatus.PENDING, note=note)],
        )

    @property
    def transaction_id(self) -> Optional[str]:
        return self.payment_info.transaction_id if self.payment_info else None

    def with_status(self, status: OrderStatus, note: Optional[str] = None, **changes: Any) -> "Order":
        """Immutable status change with a history entry appended."""
        history = list(self.status_history)
        history.append(StatusHistoryEntry(status=status, note=note))
        return self.model_copy(update={
            "status": status,
            "status_history": history,
            "updated_at": utcnow(),
            **changes,
        })


class PaymentSession(BaseModel):
    """Short-lived binding between a payment reference and a pending order."""
    reference: str
    user_id: str
    order_id: str
    items: List[OrderLineSnapshot]
    total: Decimal
    amount_in_cents: int = Field(ge=0)
    currency: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @classmethod
    def for_order(cls, order: Order, reference: str, amount_in_cents: int, ttl: timedelta) -> "PaymentSession":
        now = utcnow()
        return cls(
            reference=reference,
            user_id=order.user_id,
            order_id=order.id,
            items=list(order.items),
            total=order.total,
            amount_in_cents=amount_in_cents,
            currency=order.currency,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# ============================================================================
# SECTION 5: GATEWAY WEBHOOK PAYLOAD
# ============================================================================

class GatewayTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    amount_in_cents: int = Field(ge=0)
    reference: str = Field(min_length=1)
    currency: str = Field(min_length=1)


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction: GatewayTransaction


class WebhookSignature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    checksum: str = Field(min_length=1)
    properties: List[str] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Inbound gateway notification, validated before any business logic."""
    model_config = ConfigDict(extra="ignore")

    event: str = Field(min_length=1)
    data: WebhookData
    signature: WebhookSignature
    timestamp: Union[int, str]
    environment: Optional[str] = None
    sent_at: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_as_text(cls, value: Union[int, str]) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("timestamp must not be empty")
        return text

    @property
    def transaction(self) -> GatewayTransaction:
        return self.data.transaction


# ============================================================================
# SECTION 6: AUDIT
# ============================================================================

class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment_session", "webhook", "product"
    entity_id: str
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "user", "admin"
