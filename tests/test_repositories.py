import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from pipeline.errors import DuplicateTransaction
from pipeline.repositories import InMemoryStore
from schemas.commerce import (
    CatalogEntry,
    Order,
    OrderLineSnapshot,
    OrderStatus,
    PaymentInfo,
    PaymentSession,
    ProductStatus,
    ProductUpdate,
    utcnow,
)


def paid_order(transaction_id: str) -> Order:
    item = OrderLineSnapshot(product_id="P1", title="Mug", price=Decimal("10000"), quantity=1)
    order = Order.pending("u1", [item], "COP", "Somewhere")
    return order.with_status(
        OrderStatus.PAID,
        payment_info=PaymentInfo(
            transaction_id=transaction_id, reference="ORD-x", amount_in_cents=1000000,
            currency="COP", gateway="wompi", status="APPROVED",
        ),
    )


def session(reference: str, order_id: str = "o1", ttl: timedelta = timedelta(hours=1)) -> PaymentSession:
    now = utcnow()
    return PaymentSession(
        reference=reference, user_id="u1", order_id=order_id, items=[], total=Decimal("0"),
        amount_in_cents=0, currency="COP", created_at=now, expires_at=now + ttl,
    )


async def test_concurrent_decrements_never_go_negative(store):
    results = await asyncio.gather(*(
        store.catalog.decrement_stock_if_available("P1", 1) for _ in range(12)
    ))

    assert results.count(True) == 5
    product = await store.catalog.find_by_id("P1")
    assert product.stock == 0
    assert product.status == ProductStatus.OUT_OF_STOCK


async def test_decrement_refuses_more_than_stock(store):
    assert not await store.catalog.decrement_stock_if_available("P1", 6)
    assert not await store.catalog.decrement_stock_if_available("missing", 1)
    assert not await store.catalog.decrement_stock_if_available("P1", 0)
    assert (await store.catalog.find_by_id("P1")).stock == 5


async def test_reads_are_copies(store):
    product = await store.catalog.find_by_id("P1")
    product.stock = 999
    assert (await store.catalog.find_by_id("P1")).stock == 5


async def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            assert await tx.catalog.decrement_stock_if_available("P1", 5)
            await tx.sessions.create(session("ORD-1"))
            raise RuntimeError("boom")

    product = await store.catalog.find_by_id("P1")
    assert (product.stock, product.status) == (5, ProductStatus.ACTIVE)
    assert await store.sessions.find_by_reference("ORD-1") is None


async def test_rollback_preserves_writes_made_outside_the_transaction(store):
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.catalog.decrement_stock_if_available("P1", 2)
            await store.catalog.decrement_stock_if_available("P2", 4)
            raise RuntimeError("boom")

    assert (await store.catalog.find_by_id("P1")).stock == 5
    assert (await store.catalog.find_by_id("P2")).stock == 6


async def test_transaction_commits(store):
    async with store.transaction() as tx:
        await tx.catalog.decrement_stock_if_available("P1", 2)
    assert (await store.catalog.find_by_id("P1")).stock == 3


async def test_transaction_id_is_unique(store):
    await store.orders.save(paid_order("tx-1"))
    with pytest.raises(DuplicateTransaction):
        await store.orders.save(paid_order("tx-1"))


async def test_resaving_same_order_keeps_transaction_index(store):
    order = await store.orders.save(paid_order("tx-1"))
    shipped = order.with_status(OrderStatus.SHIPPED)
    await store.orders.save(shipped)
    assert (await store.orders.find_by_transaction_id("tx-1")).status == OrderStatus.SHIPPED


async def test_order_rollback_clears_transaction_index(store):
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.orders.save(paid_order("tx-9"))
            raise RuntimeError("boom")
    assert await store.orders.find_by_transaction_id("tx-9") is None
    await store.orders.save(paid_order("tx-9"))


async def test_expired_sessions_are_invisible_and_purged(store):
    await store.sessions.create(session("ORD-live"))
    await store.sessions.create(session("ORD-old", ttl=timedelta(seconds=-1)))

    assert await store.sessions.find_by_reference("ORD-live") is not None
    assert await store.sessions.find_by_reference("ORD-old") is None
    assert await store.sessions.purge_expired() == 1
    assert await store.sessions.purge_expired() == 0


async def test_duplicate_reference_rejected(store):
    await store.sessions.create(session("ORD-1"))
    with pytest.raises(DuplicateTransaction):
        await store.sessions.create(session("ORD-1"))


async def test_delete_for_order(store):
    await store.sessions.create(session("ORD-a", order_id="o1"))
    await store.sessions.create(session("ORD-b", order_id="o2"))
    assert await store.sessions.delete_for_order("o1") == 1
    assert await store.sessions.find_by_reference("ORD-b") is not None


async def test_authenticate(store):
    assert (await store.users.authenticate("user-token")).id == "u1"
    assert (await store.users.authenticate("admin-token")).is_admin
    assert await store.users.authenticate("nope") is None


@pytest.mark.parametrize("changes, expected", [
    (ProductUpdate(stock=0), (0, ProductStatus.OUT_OF_STOCK)),
    (ProductUpdate(status=ProductStatus.HIDDEN), (5, ProductStatus.HIDDEN)),
    (ProductUpdate(stock=0, status=ProductStatus.ACTIVE), (0, ProductStatus.OUT_OF_STOCK)),
    (ProductUpdate(price=Decimal("12000")), (5, ProductStatus.ACTIVE)),
])
async def test_product_update_status_rules(store, changes, expected):
    product = await store.catalog.update("P1", changes)
    assert (product.stock, product.status) == expected


async def test_restocking_reactivates_sold_out_product():
    store = InMemoryStore()
    store.seed_product(CatalogEntry(id="S1", title="Sold out", price=Decimal("1"), stock=0))
    assert (await store.catalog.find_by_id("S1")).status == ProductStatus.OUT_OF_STOCK

    product = await store.catalog.update("S1", ProductUpdate(stock=4))
    assert (product.stock, product.status) == (4, ProductStatus.ACTIVE)


async def test_hidden_product_stays_hidden_through_stock_changes(store):
    await store.catalog.update("P1", ProductUpdate(status=ProductStatus.HIDDEN))

    assert await store.catalog.decrement_stock_if_available("P1", 5)
    assert (await store.catalog.find_by_id("P1")).status == ProductStatus.HIDDEN

    await store.catalog.increment_stock("P1", 3)
    assert (await store.catalog.find_by_id("P1")).status == ProductStatus.HIDDEN

    product = await store.catalog.update("P1", ProductUpdate(stock=0))
    assert (product.stock, product.status) == (0, ProductStatus.HIDDEN)

    product = await store.catalog.update("P1", ProductUpdate(stock=7))
    assert (product.stock, product.status) == (7, ProductStatus.HIDDEN)


async def test_hidden_product_created_without_stock_stays_hidden():
    store = InMemoryStore()
    created = await store.catalog.create(
        CatalogEntry(id="H1", title="Draft", price=Decimal("1"), stock=0, status=ProductStatus.HIDDEN)
    )
    assert created.status == ProductStatus.HIDDEN


async def test_admin_can_unhide_with_explicit_status(store):
    await store.catalog.update("P1", ProductUpdate(status=ProductStatus.HIDDEN))
    product = await store.catalog.update("P1", ProductUpdate(status=ProductStatus.ACTIVE))
    assert product.status == ProductStatus.ACTIVE


@pytest.mark.parametrize("price", ["2500.505", "0.001"])
def test_prices_are_limited_to_two_decimals(price):
    with pytest.raises(ValidationError):
        CatalogEntry(id="X1", title="Odd", price=Decimal(price), stock=1)
    with pytest.raises(ValidationError):
        ProductUpdate(price=Decimal(price))


def test_two_decimal_price_is_accepted():
    assert CatalogEntry(id="X1", title="Ok", price=Decimal("2500.50"), stock=1).price == Decimal("2500.50")


async def test_update_unknown_product(store):
    assert await store.catalog.update("missing", ProductUpdate(stock=1)) is None
