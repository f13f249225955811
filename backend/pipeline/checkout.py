"""
Checkout Orchestrator
=====================
Creates a Pending order and its payment session, signs the amount and
builds the gateway redirect.

The amount that reaches the gateway is always the server-side snapshot
total; the client only ever supplies product ids and quantities. Order and
session are written in one store transaction.
"""

import secrets
import time
import uuid
from decimal import Decimal
from typing import Iterable, Optional, Union
from urllib.parse import quote

import structlog
from pydantic import BaseModel

from pipeline import signature
from pipeline.audit import emit_audit
from pipeline.cart_validator import validate_cart
from pipeline.config import PaymentSettings
from pipeline.errors import MissingAddress, NotFoundError
from pipeline.repositories import IStore
from schemas.commerce import AuditEventType, CartLine, Order, PaymentSession


class CheckoutResult(BaseModel):
    """Checkout creation result"""
    order_id: str
    reference: str
    redirect_url: str
    amount_in_cents: int
    currency: str
    total: Decimal
    correlation_id: str


def new_reference(order_id: str) -> str:
    """ORD-{order_id}-{epoch_ms}-{nonce}"""
    return f"ORD-{order_id}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def build_redirect_url(
    settings: PaymentSettings,
    reference: str,
    amount_in_cents: int,
    integrity: str,
    redirect_url: str,
) -> str:
    params = [
        ("public-key", settings.keys.public_key),
        ("currency", settings.currency),
        ("amount-in-cents", amount_in_cents),
        ("reference", reference),
        ("signature:integrity", integrity),
        ("redirect-url", redirect_url),
    ]
    # parameter names are sent verbatim; the gateway expects a literal colon
    query = "&".join(f"{name}={quote(str(value), safe='')}" for name, value in params)
    return f"{settings.checkout_url}?{query}"


class CheckoutOrchestrator:
    """
    Checkout flow: user -> cart validation -> Order[Pending] + PaymentSession
    -> signed redirect to the gateway.

    Example:
        checkout = CheckoutOrchestrator(store, PaymentSettings.from_env())
        result = await checkout.initiate_checkout(user.id, [{"product_id": "P1", "quantity": 2}])
        # client is redirected to result.redirect_url
    """

    def __init__(self, store: IStore, settings: PaymentSettings):
        self.store = store
        self.settings = settings
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="checkout", correlation_id=correlation_id)

    async def initiate_checkout(
        self,
        user_id: str,
        lines: Iterable[Union[CartLine, dict]],
        redirect_url: Optional[str] = None,
    ) -> CheckoutResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        # Fail before anything is persisted
        keys = self.settings.keys.require_checkout_keys()

        user = await self.store.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id)
        if not user.has_shipping_address:
            raise MissingAddress("A shipping address is required before checkout.", user_id=user_id)

        cart = await validate_cart(lines, self.store.catalog)

        order = Order.pending(
            user_id=user.id,
            items=cart.items,
            currency=self.settings.currency,
            shipping_address=user.shipping_address.strip(),
        )
        reference = new_reference(order.id)
        order = order.model_copy(update={"payment_reference": reference})
        integrity = signature.sign(reference, cart.amount_in_cents, self.settings.currency,
                                   keys.integrity_secret)
        session = PaymentSession.for_order(order, reference, cart.amount_in_cents,
                                           self.settings.session_ttl)

        async with self.store.transaction() as tx:
            order = await tx.orders.create(order)
            await tx.sessions.create(session)

        target = self.settings.resolve_redirect(redirect_url)
        url = build_redirect_url(self.settings, reference, cart.amount_in_cents, integrity, target)

        log.info("checkout_initiated",
                 order_id=order.id,
                 reference=reference,
                 amount_in_cents=cart.amount_in_cents,
                 lines=len(cart.items))

        await emit_audit(
            self.store.audit,
            event_type=AuditEventType.CHECKOUT_INITIATED,
            entity_type="order",
            entity_id=order.id,
            correlation_id=correlation_id,
            new_state={"status": order.status.value, "reference": reference},
            metadata={
                "amount_in_cents": cart.amount_in_cents,
                "currency": self.settings.currency,
                "environment": self.settings.environment,
            },
            actor="user",
        )

        return CheckoutResult(
            order_id=order.id,
            reference=reference,
            redirect_url=url,
            amount_in_cents=cart.amount_in_cents,
            currency=self.settings.currency,
            total=cart.total,
            correlation_id=correlation_id,
        )
