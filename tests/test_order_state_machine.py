from decimal import Decimal

import pytest

from pipeline.errors import IllegalTransition, NotFoundError
from pipeline.order_state_machine import (
    OrderStateMachine,
    TRANSITIONS,
    can_transition,
    transition,
)
from pipeline.repositories import InMemoryCatalogStore
from pipeline.webhook_reconciler import WebhookReconciler
from schemas.commerce import (
    AuditEventType,
    Order,
    OrderLineSnapshot,
    OrderStatus,
    ProductStatus,
    ProductUpdate,
)


@pytest.fixture
def machine(store) -> OrderStateMachine:
    return OrderStateMachine(store)


@pytest.fixture
async def paid(store, settings, checkout, make_webhook):
    """Paid order for 2 x P1; P1 stock is 3 afterwards."""
    result = await checkout.initiate_checkout("u1", [{"product_id": "P1", "quantity": 2}])
    await WebhookReconciler(store, settings).reconcile(
        make_webhook(result.reference, result.amount_in_cents)
    )
    return await store.orders.find_by_id(result.order_id)


def make_order(status=OrderStatus.PENDING) -> Order:
    item = OrderLineSnapshot(product_id="P1", title="Mug", price=Decimal("10"), quantity=1)
    return Order.pending("u1", [item], "COP", "Somewhere").model_copy(update={"status": status})


@pytest.mark.parametrize("current, target, allowed", [
    (OrderStatus.PENDING, OrderStatus.PAID, True),
    (OrderStatus.PENDING, OrderStatus.CANCELLED, True),
    (OrderStatus.PENDING, OrderStatus.SHIPPED, False),
    (OrderStatus.PAID, OrderStatus.SHIPPED, True),
    (OrderStatus.PAID, OrderStatus.CANCELLED, True),
    (OrderStatus.PAID, OrderStatus.PENDING, False),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED, True),
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED, False),
    (OrderStatus.DELIVERED, OrderStatus.CANCELLED, False),
    (OrderStatus.CANCELLED, OrderStatus.PENDING, False),
    (OrderStatus.PAID, OrderStatus.PAID, False),
])
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_terminal_states_have_no_exits():
    assert TRANSITIONS[OrderStatus.DELIVERED] == frozenset()
    assert TRANSITIONS[OrderStatus.CANCELLED] == frozenset()


def test_transition_returns_new_order_with_history():
    order = make_order()
    updated = transition(order, OrderStatus.CANCELLED, note="customer request")

    assert updated.status == OrderStatus.CANCELLED
    assert updated.status_history[-1].status == OrderStatus.CANCELLED
    assert updated.status_history[-1].note == "customer request"
    assert order.status == OrderStatus.PENDING
    assert len(order.status_history) == 1


def test_illegal_transition_leaves_order_untouched():
    order = make_order(OrderStatus.SHIPPED)
    with pytest.raises(IllegalTransition) as exc:
        transition(order, OrderStatus.PAID)
    assert exc.value.status_code == 409
    assert order.status == OrderStatus.SHIPPED


async def test_admin_cancel_of_paid_order_restores_stock(store, machine, paid):
    assert (await store.catalog.find_by_id("P1")).stock == 3

    cancelled = await machine.change_status_by_admin(paid.id, OrderStatus.CANCELLED, actor="admin:admin1")

    assert cancelled.status == OrderStatus.CANCELLED
    assert (await store.catalog.find_by_id("P1")).stock == 5
    stored = await store.orders.find_by_id(paid.id)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.payment_info.transaction_id == "tx-1001"

    with pytest.raises(IllegalTransition):
        await machine.change_status_by_admin(paid.id, OrderStatus.SHIPPED, actor="admin:admin1")
    assert (await store.catalog.find_by_id("P1")).stock == 5

    restored = await store.audit.get_by_entity("product", "P1")
    assert [e.event_type for e in restored] == [AuditEventType.STOCK_RESTORED]
    assert restored[0].metadata["quantity"] == 2


async def test_restore_reactivates_exhausted_product(store, settings, checkout, machine, make_webhook):
    result = await checkout.initiate_checkout("u1", [{"product_id": "P1", "quantity": 5}])
    await WebhookReconciler(store, settings).reconcile(
        make_webhook(result.reference, result.amount_in_cents)
    )
    assert (await store.catalog.find_by_id("P1")).status == ProductStatus.OUT_OF_STOCK

    await machine.change_status_by_admin(result.order_id, OrderStatus.CANCELLED, actor="admin:admin1")

    product = await store.catalog.find_by_id("P1")
    assert (product.stock, product.status) == (5, ProductStatus.ACTIVE)


async def test_restore_keeps_hidden_product_hidden(store, machine, paid):
    await store.catalog.update("P1", ProductUpdate(status=ProductStatus.HIDDEN))

    await machine.change_status_by_admin(paid.id, OrderStatus.CANCELLED, actor="admin:admin1")

    product = await store.catalog.find_by_id("P1")
    assert (product.stock, product.status) == (5, ProductStatus.HIDDEN)


async def test_hidden_product_sold_out_and_restored_stays_hidden(store, settings, checkout, machine,
                                                                 make_webhook):
    await store.catalog.update("P1", ProductUpdate(stock=2))
    result = await checkout.initiate_checkout("u1", [{"product_id": "P1", "quantity": 2}])
    await store.catalog.update("P1", ProductUpdate(status=ProductStatus.HIDDEN))

    await WebhookReconciler(store, settings).reconcile(
        make_webhook(result.reference, result.amount_in_cents)
    )
    product = await store.catalog.find_by_id("P1")
    assert (product.stock, product.status) == (0, ProductStatus.HIDDEN)

    await machine.change_status_by_admin(result.order_id, OrderStatus.CANCELLED, actor="admin:admin1")

    product = await store.catalog.find_by_id("P1")
    assert (product.stock, product.status) == (2, ProductStatus.HIDDEN)


async def test_restore_takes_products_in_id_order(store, settings, checkout, machine, make_webhook,
                                                 monkeypatch):
    result = await checkout.initiate_checkout(
        "u1", [{"product_id": "P2", "quantity": 1}, {"product_id": "P1", "quantity": 1}]
    )
    await WebhookReconciler(store, settings).reconcile(
        make_webhook(result.reference, result.amount_in_cents)
    )

    restored = []
    original = InMemoryCatalogStore.increment_stock

    async def recording(self, product_id, quantity):
        restored.append(product_id)
        return await original(self, product_id, quantity)

    monkeypatch.setattr(InMemoryCatalogStore, "increment_stock", recording)
    await machine.change_status_by_admin(result.order_id, OrderStatus.CANCELLED, actor="admin:admin1")

    assert restored == ["P1", "P2"]


async def test_cancel_pending_order_drops_session_without_touching_stock(store, checkout, machine):
    result = await checkout.initiate_checkout("u1", [{"product_id": "P1", "quantity": 2}])

    await machine.change_status_by_admin(result.order_id, OrderStatus.CANCELLED, actor="admin:admin1")

    assert (await store.catalog.find_by_id("P1")).stock == 5
    assert await store.sessions.find_by_reference(result.reference) is None


async def test_admin_cannot_mark_paid(store, checkout, machine):
    result = await checkout.initiate_checkout("u1", [{"product_id": "P1", "quantity": 1}])
    with pytest.raises(IllegalTransition):
        await machine.change_status_by_admin(result.order_id, OrderStatus.PAID, actor="admin:admin1")
    assert (await store.orders.find_by_id(result.order_id)).status == OrderStatus.PENDING


async def test_fulfilment_path(store, machine, paid):
    shipped = await machine.change_status_by_admin(paid.id, OrderStatus.SHIPPED, actor="admin:admin1")
    delivered = await machine.change_status_by_admin(paid.id, OrderStatus.DELIVERED, actor="admin:admin1",
                                                     note="Left with doorman")

    assert shipped.status == OrderStatus.SHIPPED
    assert delivered.status == OrderStatus.DELIVERED
    assert [h.status for h in delivered.status_history] == [
        OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
    ]
    assert delivered.status_history[-1].note == "Left with doorman"

    with pytest.raises(IllegalTransition):
        await machine.change_status_by_admin(paid.id, OrderStatus.CANCELLED, actor="admin:admin1")
    assert (await store.catalog.find_by_id("P1")).stock == 3


async def test_status_change_is_audited(store, machine, paid):
    await machine.change_status_by_admin(paid.id, OrderStatus.SHIPPED, actor="admin:admin1")
    entries = await store.audit.get_by_entity("order", paid.id)
    change = [e for e in entries if e.event_type == AuditEventType.ORDER_STATUS_CHANGED]
    assert len(change) == 1
    assert change[0].previous_state == {"status": "Paid"}
    assert change[0].new_state == {"status": "Shipped"}
    assert change[0].actor == "admin:admin1"


async def test_unknown_order(machine):
    with pytest.raises(NotFoundError):
        await machine.change_status_by_admin("missing", OrderStatus.SHIPPED, actor="admin:admin1")
