"""
Order State Machine
===================
Legal order status transitions and the admin-side status changes.

    Pending  -> Paid | Cancelled
    Paid     -> Shipped | Cancelled
    Shipped  -> Delivered
    Delivered, Cancelled: terminal

Paid is reachable only through payment reconciliation. Cancelling a Paid
order puts its committed stock back on the shelf; cancelling a Pending one
drops its payment session so a late webhook cannot revive it.
"""

import uuid
from typing import Any, Dict, FrozenSet, List, Optional

import structlog

from pipeline.audit import emit_audit
from pipeline.errors import IllegalTransition, NotFoundError
from pipeline.repositories import IStore
from schemas.commerce import AuditEventType, Order, OrderLineSnapshot, OrderStatus

logger = structlog.get_logger().bind(component="order_state_machine")


TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ADMIN_TARGETS: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
})

# Statuses in which the order's stock has been taken from the catalog
STOCK_COMMITTED: FrozenSet[OrderStatus] = frozenset({OrderStatus.PAID})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(order: Order, target: OrderStatus, note: Optional[str] = None, **changes: Any) -> Order:
    """Return a new Order in `target` with history appended; the input is untouched."""
    if not can_transition(order.status, target):
        raise IllegalTransition(
            f"Cannot move order from {order.status.value} to {target.value}",
            order_id=order.id,
            current=order.status.value,
            target=target.value,
        )
    return order.with_status(target, note=note, **changes)


class OrderStateMachine:
    """Admin-driven status changes with stock restoration on cancel"""

    def __init__(self, store: IStore):
        self.store = store

    async def change_status_by_admin(
        self,
        order_id: str,
        target: OrderStatus,
        actor: str,
        note: Optional[str] = None,
    ) -> Order:
        correlation_id = str(uuid.uuid4())
        log = logger.bind(correlation_id=correlation_id, order_id=order_id, actor=actor)

        if target not in ADMIN_TARGETS:
            log.warning("admin_transition_rejected", target=target.value)
            raise IllegalTransition(
                f"Status {target.value} cannot be set by an administrator",
                order_id=order_id,
                target=target.value,
            )

        restored: List[OrderLineSnapshot] = []
        async with self.store.transaction() as tx:
            order = await tx.orders.find_by_id(order_id, for_update=True)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)

            previous = order.status
            updated = transition(order, target, note=note or f"Status changed by {actor}")
            updated = await tx.orders.save(updated)

            if target == OrderStatus.CANCELLED:
                if previous in STOCK_COMMITTED:
                    restored = await self._restore_stock(tx, order, log)
                elif previous == OrderStatus.PENDING:
                    dropped = await tx.sessions.delete_for_order(order.id)
                    log.info("payment_session_dropped", sessions=dropped)

        log.info("order_status_changed", previous=previous.value, status=target.value)

        await emit_audit(
            self.store.audit,
            event_type=AuditEventType.ORDER_STATUS_CHANGED,
            entity_type="order",
            entity_id=order_id,
            correlation_id=correlation_id,
            previous_state={"status": previous.value},
            new_state={"status": target.value},
            metadata={"note": note} if note else None,
            actor=actor,
        )
        for item in restored:
            await emit_audit(
                self.store.audit,
                event_type=AuditEventType.STOCK_RESTORED,
                entity_type="product",
                entity_id=item.product_id,
                correlation_id=correlation_id,
                metadata={"order_id": order_id, "quantity": item.quantity},
                actor=actor,
            )

        return updated

    async def _restore_stock(self, tx: IStore, order: Order, log) -> List[OrderLineSnapshot]:
        """Best effort: a product that no longer exists is logged and skipped."""
        restored = []
        # same lock order as payment confirmation
        for item in sorted(order.items, key=lambda i: i.product_id):
            if await tx.catalog.increment_stock(item.product_id, item.quantity):
                restored.append(item)
            else:
                log.warning("stock_restore_skipped",
                            product_id=item.product_id,
                            quantity=item.quantity)
        log.info("stock_restored", lines=len(restored), of=len(order.items))
        return restored
