"""
Webhook Reconciler
==================
Turns a signed gateway notification into exactly one Pending -> Paid
transition, with stock decremented once per order line.

Processing order:
1. strict schema parse
2. event filter
3. signature verification (the only path that raises)
4. primary idempotency gate: transaction id already recorded
5. status filter (APPROVED only)
6. session -> order resolution
7. secondary gate: order status
8. amount / currency cross-check against the session
9. atomic transition in one store transaction, gates re-applied under lock

Permanent outcomes are acknowledged to the gateway (HTTP 200) so it stops
redelivering; failures are logged at error level for operators instead.
A bad signature or missing secret raises, and an unexpected error inside
the transaction answers 500 so the delivery is retried.
"""

import json
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError as SchemaError

from pipeline import signature
from pipeline.audit import emit_audit
from pipeline.config import PaymentSettings
from pipeline.errors import (
    DuplicateTransaction,
    InsufficientStock,
    IntegrationAcknowledged,
    InvalidSignature,
    MalformedPayload,
)
from pipeline.order_state_machine import transition
from pipeline.repositories import IStore
from schemas.commerce import (
    AuditEventType,
    GatewayTransaction,
    Order,
    OrderStatus,
    PaymentInfo,
    PaymentSession,
    WebhookPayload,
)


class ReconciliationOutcome(str, Enum):
    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    IGNORED_EVENT = "IGNORED_EVENT"
    NOT_APPROVED = "NOT_APPROVED"
    ALREADY_PAID = "ALREADY_PAID"
    MALFORMED = "MALFORMED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_PENDING = "ORDER_NOT_PENDING"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Harmless no-ops and successes; everything else is an acknowledged failure
OK_OUTCOMES = frozenset({
    ReconciliationOutcome.PROCESSED,
    ReconciliationOutcome.DUPLICATE,
    ReconciliationOutcome.IGNORED_EVENT,
    ReconciliationOutcome.NOT_APPROVED,
    ReconciliationOutcome.ALREADY_PAID,
})

# Transient failures (deadlock, lost connection); the delivery may succeed later
RETRYABLE_OUTCOMES = frozenset({ReconciliationOutcome.INTERNAL_ERROR})


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    message: str
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in OK_OUTCOMES

    @property
    def status_code(self) -> int:
        """500 asks the gateway to redeliver; everything else is final."""
        return 500 if self.outcome in RETRYABLE_OUTCOMES else 200

    def to_response(self) -> Dict[str, Any]:
        return {"ok": self.ok, "msg": self.message, "code": self.outcome.value}


def parse_webhook(raw_payload: Union[bytes, str, Dict[str, Any]]) -> WebhookPayload:
    """Decode and strictly validate a gateway notification body."""
    try:
        if isinstance(raw_payload, (bytes, str)):
            raw_payload = json.loads(raw_payload)
        return WebhookPayload.model_validate(raw_payload)
    except (SchemaError, ValueError) as e:
        raise MalformedPayload(str(e)[:500]) from e


class _GateClosed(Exception):
    """Aborts the reconciliation transaction with a terminal outcome."""

    def __init__(self, outcome: ReconciliationOutcome, message: str):
        super().__init__(message)
        self.outcome = outcome
        self.message = message


class WebhookReconciler:
    """
    Gateway webhook handler.

    Example:
        reconciler = WebhookReconciler(store, PaymentSettings.from_env())
        result = await reconciler.reconcile(await request.json())
        return JSONResponse(result.to_response(), status_code=result.status_code)
    """

    def __init__(self, store: IStore, settings: PaymentSettings):
        self.store = store
        self.settings = settings
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="webhook_reconciler", correlation_id=correlation_id)

    @staticmethod
    def _result(
        outcome: ReconciliationOutcome,
        message: str,
        tx: Optional[GatewayTransaction] = None,
        order_id: Optional[str] = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            message=message,
            order_id=order_id,
            transaction_id=tx.id if tx else None,
        )

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def reconcile(self, raw_payload: Union[bytes, str, Dict[str, Any]]) -> ReconciliationResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        # 1. Strict parse
        try:
            payload = parse_webhook(raw_payload)
        except IntegrationAcknowledged as e:
            log.warning("webhook_malformed", code=e.code, error=e.msg)
            return self._result(ReconciliationOutcome.MALFORMED, "Malformed webhook payload.")

        tx = payload.transaction
        log = log.bind(transaction_id=tx.id, reference=tx.reference)

        # 2. Event filter
        if payload.event != self.settings.transaction_event:
            log.info("webhook_event_ignored", webhook_event=payload.event)
            return self._result(ReconciliationOutcome.IGNORED_EVENT, "Event ignored.", tx)

        # 3. Signature
        secret = self.settings.keys.require_events_secret()
        if not signature.verify(
            payload.signature.checksum,
            tx.id,
            tx.status,
            tx.amount_in_cents,
            payload.timestamp,
            secret,
        ):
            log.warning("webhook_signature_invalid", environment=self.settings.environment)
            await emit_audit(
                self.store.audit,
                event_type=AuditEventType.WEBHOOK_SIGNATURE_INVALID,
                entity_type="webhook",
                entity_id=tx.id,
                correlation_id=correlation_id,
                metadata={"reference": tx.reference, "status": tx.status},
                actor="webhook",
            )
            raise InvalidSignature("Webhook signature verification failed", transaction_id=tx.id)

        log.info("webhook_received", status=tx.status, amount_in_cents=tx.amount_in_cents)
        await emit_audit(
            self.store.audit,
            event_type=AuditEventType.WEBHOOK_RECEIVED,
            entity_type="webhook",
            entity_id=tx.id,
            correlation_id=correlation_id,
            metadata={"reference": tx.reference, "status": tx.status,
                      "amount_in_cents": tx.amount_in_cents},
            actor="webhook",
        )

        result = await self._reconcile_verified(tx, correlation_id, log)

        if result.outcome in OK_OUTCOMES:
            log.info("webhook_reconciled", outcome=result.outcome.value, order_id=result.order_id)
        else:
            log.error("webhook_reconciliation_failed",
                      outcome=result.outcome.value,
                      order_id=result.order_id,
                      detail=result.message)
        return result

    # =========================================================================
    # VERIFIED PAYLOAD
    # =========================================================================

    async def _reconcile_verified(
        self,
        tx: GatewayTransaction,
        correlation_id: str,
        log,
    ) -> ReconciliationResult:
        # 4. Primary idempotency gate
        existing = await self.store.orders.find_by_transaction_id(tx.id)
        if existing is not None:
            return self._result(ReconciliationOutcome.DUPLICATE,
                                "Transaction already processed.", tx, existing.id)

        # 5. Status filter
        if tx.status != self.settings.approved_status:
            await emit_audit(
                self.store.audit,
                event_type=AuditEventType.PAYMENT_REJECTED,
                entity_type="payment_session",
                entity_id=tx.reference,
                correlation_id=correlation_id,
                metadata={"transaction_id": tx.id, "status": tx.status},
                actor="webhook",
            )
            return self._result(ReconciliationOutcome.NOT_APPROVED,
                                f"Transaction status {tx.status}; nothing to do.", tx)

        # 6. Session -> order
        session = await self.store.sessions.find_by_reference(tx.reference)
        if session is None:
            return self._result(ReconciliationOutcome.SESSION_NOT_FOUND,
                                "Payment session not found or expired.", tx)

        order = await self.store.orders.find_by_id(session.order_id)
        if order is None:
            return self._result(ReconciliationOutcome.ORDER_NOT_FOUND,
                                "Order for payment session not found.", tx, session.order_id)

        # 7. Secondary gate
        closed = self._check_order_gate(order)
        if closed is not None:
            return self._result(closed.outcome, closed.message, tx, order.id)

        # 8. Amount / currency cross-check
        if tx.amount_in_cents != session.amount_in_cents or tx.currency != session.currency:
            log.error("payment_amount_mismatch",
                      expected_amount=session.amount_in_cents,
                      received_amount=tx.amount_in_cents,
                      expected_currency=session.currency,
                      received_currency=tx.currency)
            return self._result(ReconciliationOutcome.AMOUNT_MISMATCH,
                                "Paid amount does not match the order.", tx, order.id)

        # 9. Atomic transition
        return await self._confirm_payment(tx, session, correlation_id, log)

    def _check_order_gate(self, order: Order) -> Optional[_GateClosed]:
        if order.status == OrderStatus.PAID:
            return _GateClosed(ReconciliationOutcome.ALREADY_PAID, "Order already paid.")
        if order.status != OrderStatus.PENDING:
            return _GateClosed(ReconciliationOutcome.ORDER_NOT_PENDING,
                               f"Order is {order.status.value}; payment not applied.")
        return None

    async def _confirm_payment(
        self,
        tx: GatewayTransaction,
        session: PaymentSession,
        correlation_id: str,
        log,
    ) -> ReconciliationResult:
        order_id = session.order_id
        try:
            async with self.store.transaction() as uow:
                order = await uow.orders.find_by_id(order_id, for_update=True)
                if order is None:
                    raise _GateClosed(ReconciliationOutcome.ORDER_NOT_FOUND,
                                      "Order for payment session not found.")
                if await uow.orders.find_by_transaction_id(tx.id) is not None:
                    raise _GateClosed(ReconciliationOutcome.DUPLICATE,
                                      "Transaction already processed.")
                closed = self._check_order_gate(order)
                if closed is not None:
                    raise closed

                # fixed lock order across concurrent deliveries
                for item in sorted(order.items, key=lambda i: i.product_id):
                    if not await uow.catalog.decrement_stock_if_available(item.product_id, item.quantity):
                        raise InsufficientStock(
                            f"Insufficient stock for {item.title!r}",
                            product_id=item.product_id,
                            quantity=item.quantity,
                        )

                paid = transition(
                    order,
                    OrderStatus.PAID,
                    note=f"Payment approved. Transaction {tx.id}, reference {tx.reference}",
                    payment_info=PaymentInfo(
                        transaction_id=tx.id,
                        reference=tx.reference,
                        amount_in_cents=tx.amount_in_cents,
                        currency=tx.currency,
                        gateway=self.settings.gateway_name,
                        status=tx.status,
                    ),
                )
                await uow.orders.save(paid)
                await uow.sessions.delete(session.reference)

        except _GateClosed as gate:
            return self._result(gate.outcome, gate.message, tx, order_id)

        except InsufficientStock as e:
            log.error("payment_stock_exhausted", order_id=order_id, **e.context)
            await emit_audit(
                self.store.audit,
                event_type=AuditEventType.PAYMENT_REJECTED,
                entity_type="order",
                entity_id=order_id,
                correlation_id=correlation_id,
                metadata={"transaction_id": tx.id, "reason": e.code, **e.context},
                actor="webhook",
            )
            return self._result(ReconciliationOutcome.INSUFFICIENT_STOCK,
                                "Insufficient stock to confirm order.", tx, order_id)

        except DuplicateTransaction:
            return self._result(ReconciliationOutcome.DUPLICATE,
                                "Transaction already processed.", tx, order_id)

        except Exception as e:
            log.exception("payment_confirmation_failed", order_id=order_id, error=str(e))
            return self._result(ReconciliationOutcome.INTERNAL_ERROR,
                                "Internal error while confirming payment.", tx, order_id)

        log.info("payment_confirmed",
                 order_id=order_id,
                 amount_in_cents=tx.amount_in_cents,
                 lines=len(paid.items))

        await emit_audit(
            self.store.audit,
            event_type=AuditEventType.PAYMENT_CONFIRMED,
            entity_type="order",
            entity_id=order_id,
            correlation_id=correlation_id,
            previous_state={"status": OrderStatus.PENDING.value},
            new_state={"status": OrderStatus.PAID.value, "transaction_id": tx.id},
            metadata={"amount_in_cents": tx.amount_in_cents, "reference": tx.reference},
            actor="webhook",
        )

        return self._result(ReconciliationOutcome.PROCESSED, "Payment applied.", tx, order_id)
