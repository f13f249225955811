# Payment Pipeline
# ================
# Checkout, gateway reconciliation and order lifecycle for the storefront

from .errors import (
    CommerceError,
    ValidationError,
    CartRejected,
    NotFoundError,
    ConflictError,
    IllegalTransition,
    InsufficientStock,
    DuplicateTransaction,
    SecurityError,
    InvalidSignature,
    ConfigurationError,
)
from .config import GatewayKeys, PaymentSettings
from .repositories import (
    IStore,
    InMemoryStore,
)
from .cart_validator import ValidatedCart, validate_cart
from .checkout import CheckoutOrchestrator, CheckoutResult
from .order_state_machine import (
    TRANSITIONS,
    OrderStateMachine,
    can_transition,
    transition,
)
from .webhook_reconciler import (
    ReconciliationOutcome,
    ReconciliationResult,
    WebhookReconciler,
    parse_webhook,
)

__all__ = [
    # Errors
    "CommerceError",
    "ValidationError",
    "CartRejected",
    "NotFoundError",
    "ConflictError",
    "IllegalTransition",
    "InsufficientStock",
    "DuplicateTransaction",
    "SecurityError",
    "InvalidSignature",
    "ConfigurationError",
    # Configuration
    "GatewayKeys",
    "PaymentSettings",
    # Stores
    "IStore",
    "InMemoryStore",
    # Checkout
    "ValidatedCart",
    "validate_cart",
    "CheckoutOrchestrator",
    "CheckoutResult",
    # Order lifecycle
    "TRANSITIONS",
    "OrderStateMachine",
    "can_transition",
    "transition",
    # Webhook
    "ReconciliationOutcome",
    "ReconciliationResult",
    "WebhookReconciler",
    "parse_webhook",
]
