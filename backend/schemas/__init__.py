# schemas/__init__.py
from schemas.commerce import (
    AuditEventType,
    AuditLogEntry,
    CartLine,
    CatalogEntry,
    GatewayTransaction,
    Order,
    OrderLineSnapshot,
    OrderStatus,
    PaymentInfo,
    PaymentSession,
    ProductStatus,
    ProductUpdate,
    StatusHistoryEntry,
    User,
    UserRole,
    WebhookPayload,
    snapshot_amount_in_cents,
    snapshot_total,
    to_minor_units,
    utcnow,
)

__all__ = [
    # Enums
    "AuditEventType",
    "OrderStatus",
    "ProductStatus",
    "UserRole",
    # Catalog & users
    "CatalogEntry",
    "ProductUpdate",
    "User",
    # Cart & orders
    "CartLine",
    "OrderLineSnapshot",
    "Order",
    "StatusHistoryEntry",
    "PaymentInfo",
    "PaymentSession",
    # Gateway
    "GatewayTransaction",
    "WebhookPayload",
    # Audit
    "AuditLogEntry",
    # Helpers
    "snapshot_amount_in_cents",
    "snapshot_total",
    "to_minor_units",
    "utcnow",
]
