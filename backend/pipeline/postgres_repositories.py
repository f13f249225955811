"""
PostgreSQL Stores
=================
asyncpg implementations of the store interfaces.

Stock changes are single conditional UPDATE statements, so concurrent
reconciliations can never drive stock negative. Orders carry a UNIQUE
payment_transaction_id, which is the final idempotency backstop: a second
attempt to record the same gateway transaction fails at commit time and is
surfaced as DuplicateTransaction.

Every store takes an "executor": either the pool (autocommit) or a
connection that is inside an open transaction.
"""

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional, Union

import asyncpg
import structlog

from database import Database, get_entity_events, log_event
from pipeline.errors import DuplicateTransaction
from pipeline.repositories import (
    IAuditLog,
    ICatalogStore,
    IOrderStore,
    IPaymentSessionStore,
    IStore,
    IUserStore,
    hash_token,
)
from schemas.commerce import (
    AuditLogEntry,
    CatalogEntry,
    Order,
    PaymentSession,
    ProductUpdate,
    User,
    utcnow,
)

logger = structlog.get_logger().bind(component="postgres_store")

Executor = Union[asyncpg.Pool, asyncpg.Connection]


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as 'UPDATE 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# =============================================================================
# CATALOG
# =============================================================================

class PostgresCatalogStore(ICatalogStore):

    def __init__(self, executor: Executor):
        self._db = executor

    def is_well_formed_key(self, product_id: str) -> bool:
        return isinstance(product_id, str) and _is_uuid(product_id)

    @staticmethod
    def _entry(row: asyncpg.Record) -> CatalogEntry:
        return CatalogEntry(
            id=str(row["id"]),
            title=row["title"],
            price=row["price"],
            stock=row["stock"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def find_by_id(self, product_id: str) -> Optional[CatalogEntry]:
        if not self.is_well_formed_key(product_id):
            return None
        row = await self._db.fetchrow("SELECT * FROM products WHERE id = $1", product_id)
        return self._entry(row) if row else None

    async def create(self, entry: CatalogEntry) -> CatalogEntry:
        row = await self._db.fetchrow(
            """
            INSERT INTO products (id, title, price, stock, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4,
                    CASE WHEN $4::int = 0 AND $5::text <> 'hidden' THEN 'out_of_stock'
                         ELSE $5::text END,
                    $6, $7)
            RETURNING *
            """,
            entry.id if _is_uuid(entry.id) else str(uuid.uuid4()),
            entry.title,
            entry.price,
            entry.stock,
            entry.status.value,
            entry.created_at,
            entry.updated_at,
        )
        return self._entry(row)

    async def update(self, product_id: str, changes: ProductUpdate) -> Optional[CatalogEntry]:
        if not self.is_well_formed_key(product_id):
            return None
        row = await self._db.fetchrow(
            """
            UPDATE products
            SET title = COALESCE($2::text, title),
                price = COALESCE($3::numeric, price),
                stock = COALESCE($4::int, stock),
                status = CASE
                    WHEN COALESCE($5::text, status) = 'hidden' THEN 'hidden'
                    WHEN COALESCE($4::int, stock) = 0 THEN 'out_of_stock'
                    WHEN $5::text IS NOT NULL THEN $5::text
                    WHEN $4::int IS NOT NULL AND status = 'out_of_stock' THEN 'active'
                    ELSE status
                END,
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            product_id,
            changes.title,
            changes.price,
            changes.stock,
            changes.status.value if changes.status else None,
        )
        return self._entry(row) if row else None

    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        if quantity <= 0 or not self.is_well_formed_key(product_id):
            return False
        result = await self._db.execute(
            """
            UPDATE products
            SET stock = stock - $2,
                status = CASE WHEN stock - $2 = 0 AND status <> 'hidden' THEN 'out_of_stock'
                              ELSE status END,
                updated_at = NOW()
            WHERE id = $1 AND stock >= $2
            """,
            product_id,
            quantity,
        )
        return _affected(result) == 1

    async def increment_stock(self, product_id: str, quantity: int) -> bool:
        if not self.is_well_formed_key(product_id):
            return False
        result = await self._db.execute(
            """
            UPDATE products
            SET stock = stock + $2,
                status = CASE WHEN status = 'out_of_stock' THEN 'active' ELSE status END,
                updated_at = NOW()
            WHERE id = $1
            """,
            product_id,
            quantity,
        )
        return _affected(result) == 1


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderStore(IOrderStore):

    def __init__(self, executor: Executor):
        self._db = executor

    @staticmethod
    def _order(row: asyncpg.Record) -> Order:
        return Order(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            items=_json(row["items"]),
            total=row["total"],
            currency=row["currency"],
            shipping_address=row["shipping_address"],
            status=row["status"],
            status_history=_json(row["status_history"]) or [],
            payment_reference=row["payment_reference"],
            payment_info=_json(row["payment_info"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create(self, order: Order) -> Order:
        return await self.save(order)

    async def find_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        if not _is_uuid(order_id):
            return None
        query = "SELECT * FROM orders WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self._db.fetchrow(query, order_id)
        return self._order(row) if row else None

    async def find_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        row = await self._db.fetchrow(
            "SELECT * FROM orders WHERE payment_transaction_id = $1",
            transaction_id,
        )
        return self._order(row) if row else None

    async def save(self, order: Order) -> Order:
        try:
            row = await self._db.fetchrow(
                """
                INSERT INTO orders
                (id, user_id, items, total, currency, shipping_address, status,
                 status_history, payment_reference, payment_info, payment_transaction_id,
                 created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    status_history = EXCLUDED.status_history,
                    payment_reference = EXCLUDED.payment_reference,
                    payment_info = EXCLUDED.payment_info,
                    payment_transaction_id = EXCLUDED.payment_transaction_id,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                order.id,
                order.user_id,
                json.dumps([item.model_dump(mode="json") for item in order.items]),
                order.total,
                order.currency,
                order.shipping_address,
                order.status.value,
                json.dumps([entry.model_dump(mode="json") for entry in order.status_history]),
                order.payment_reference,
                json.dumps(order.payment_info.model_dump(mode="json")) if order.payment_info else None,
                order.transaction_id,
                order.created_at,
                order.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateTransaction(
                f"Transaction {order.transaction_id} already recorded",
                transaction_id=order.transaction_id,
                constraint=getattr(e, "constraint_name", None),
            ) from e
        return self._order(row)


# =============================================================================
# PAYMENT SESSIONS
# =============================================================================

class PostgresPaymentSessionStore(IPaymentSessionStore):

    def __init__(self, executor: Executor):
        self._db = executor

    @staticmethod
    def _session(row: asyncpg.Record) -> PaymentSession:
        return PaymentSession(
            reference=row["reference"],
            user_id=str(row["user_id"]),
            order_id=str(row["order_id"]),
            items=_json(row["items"]),
            total=row["total"],
            amount_in_cents=row["amount_in_cents"],
            currency=row["currency"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    async def create(self, session: PaymentSession) -> PaymentSession:
        try:
            await self._db.execute(
                """
                INSERT INTO payment_sessions
                (reference, user_id, order_id, items, total, amount_in_cents, currency,
                 created_at, expires_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                session.reference,
                session.user_id,
                session.order_id,
                json.dumps([item.model_dump(mode="json") for item in session.items]),
                session.total,
                session.amount_in_cents,
                session.currency,
                session.created_at,
                session.expires_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateTransaction(
                f"Payment reference {session.reference} already exists",
                reference=session.reference,
            ) from e
        return session

    async def find_by_reference(self, reference: str) -> Optional[PaymentSession]:
        row = await self._db.fetchrow(
            "SELECT * FROM payment_sessions WHERE reference = $1 AND expires_at > NOW()",
            reference,
        )
        return self._session(row) if row else None

    async def delete(self, reference: str) -> bool:
        result = await self._db.execute(
            "DELETE FROM payment_sessions WHERE reference = $1",
            reference,
        )
        return _affected(result) > 0

    async def delete_for_order(self, order_id: str) -> int:
        if not _is_uuid(order_id):
            return 0
        result = await self._db.execute(
            "DELETE FROM payment_sessions WHERE order_id = $1",
            order_id,
        )
        return _affected(result)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        result = await self._db.execute(
            "DELETE FROM payment_sessions WHERE expires_at <= $1",
            now or utcnow(),
        )
        purged = _affected(result)
        if purged:
            logger.info("payment_sessions_purged", count=purged)
        return purged


# =============================================================================
# USERS
# =============================================================================

class PostgresUserStore(IUserStore):

    def __init__(self, executor: Executor):
        self._db = executor

    @staticmethod
    def _user(row: asyncpg.Record) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            role=row["role"],
            shipping_address=row["shipping_address"],
        )

    async def find_by_id(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        row = await self._db.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return self._user(row) if row else None

    async def authenticate(self, token: str) -> Optional[User]:
        row = await self._db.fetchrow(
            "SELECT * FROM users WHERE token_hash = $1",
            hash_token(token),
        )
        return self._user(row) if row else None


# =============================================================================
# AUDIT (The Black Box)
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """Audit entries written to system_events through database.log_event"""

    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            event_type=entry.event_type.value,
            payload={
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            correlation_id=entry.correlation_id,
            actor=entry.actor,
            event_id=entry.log_id,
            timestamp=entry.timestamp,
        )

    async def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
        events = await get_entity_events(entity_type, entity_id)
        return [
            AuditLogEntry(
                log_id=event["id"],
                correlation_id=event["correlation_id"] or "",
                event_type=event["event_type"],
                entity_type=event["entity_type"],
                entity_id=event["entity_id"],
                previous_state=event["payload"].get("previous_state"),
                new_state=event["payload"].get("new_state"),
                metadata=event["payload"].get("metadata") or {},
                timestamp=event["timestamp"],
                actor=event["actor"] or "system",
            )
            for event in events
        ]


# =============================================================================
# STORE
# =============================================================================

class PostgresStore(IStore):
    """Pool-backed store; transaction() pins one connection."""

    def __init__(self, pool: Optional[asyncpg.Pool] = None):
        self._pool = pool or Database.pool()
        self.catalog = PostgresCatalogStore(self._pool)
        self.orders = PostgresOrderStore(self._pool)
        self.sessions = PostgresPaymentSessionStore(self._pool)
        self.users = PostgresUserStore(self._pool)
        self.audit = PostgresAuditLog()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["_PostgresTransaction"]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield _PostgresTransaction(conn, self.audit)


class _PostgresTransaction(IStore):

    def __init__(self, conn: asyncpg.Connection, audit: IAuditLog):
        self.catalog = PostgresCatalogStore(conn)
        self.orders = PostgresOrderStore(conn)
        self.sessions = PostgresPaymentSessionStore(conn)
        self.users = PostgresUserStore(conn)
        self.audit = audit

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["_PostgresTransaction"]:
        yield self
