"""
Store Interfaces & In-Memory Implementations
============================================
Persistence seams for the checkout and reconciliation pipeline.

- Catalog store: keyed lookup, atomic conditional decrement, increment
- Order store: create / find / find by transaction id / save
- Payment session store: reference-keyed, TTL-bounded
- User store: lookup and bearer-token credential check
- Audit log: append-only black box
- IStore.transaction(): unit of work (commit/rollback as one)

The in-memory implementations back the test-suite and local runs. Each
operation completes without yielding to the event loop, so it is atomic
with respect to other coroutines. Transactions are serialised with an
asyncio.Lock and rolled back with an undo journal, which leaves writes
made outside the transaction intact.
"""

import asyncio
import hashlib
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional

import structlog

from pipeline.errors import DuplicateTransaction
from schemas.commerce import (
    AuditLogEntry,
    CatalogEntry,
    Order,
    PaymentSession,
    ProductStatus,
    ProductUpdate,
    User,
    utcnow,
)

logger = structlog.get_logger().bind(component="repositories")

UndoJournal = List[Callable[[], None]]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def status_for_stock(stock: int, current: ProductStatus) -> ProductStatus:
    """Exhausted stock forces out_of_stock; restored stock re-activates it.
    Hidden products are never touched."""
    if current == ProductStatus.HIDDEN:
        return current
    if stock == 0:
        return ProductStatus.OUT_OF_STOCK
    if current == ProductStatus.OUT_OF_STOCK:
        return ProductStatus.ACTIVE
    return current


def status_after_decrement(stock: int, current: ProductStatus) -> ProductStatus:
    if stock == 0 and current != ProductStatus.HIDDEN:
        return ProductStatus.OUT_OF_STOCK
    return current


# =============================================================================
# INTERFACES
# =============================================================================

class ICatalogStore(ABC):
    """Catalog collaborator. Stock changes must be single atomic operations."""

    @abstractmethod
    def is_well_formed_key(self, product_id: str) -> bool:
        pass

    @abstractmethod
    async def find_by_id(self, product_id: str) -> Optional[CatalogEntry]:
        pass

    @abstractmethod
    async def create(self, entry: CatalogEntry) -> CatalogEntry:
        pass

    @abstractmethod
    async def update(self, product_id: str, changes: ProductUpdate) -> Optional[CatalogEntry]:
        pass

    @abstractmethod
    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        """Decrement by quantity only if stock >= quantity. Returns True if applied."""
        pass

    @abstractmethod
    async def increment_stock(self, product_id: str, quantity: int) -> bool:
        """Returns False if the product no longer exists."""
        pass


class IOrderStore(ABC):

    @abstractmethod
    async def create(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def find_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Persist. Raises DuplicateTransaction if the transaction id is taken."""
        pass


class IPaymentSessionStore(ABC):

    @abstractmethod
    async def create(self, session: PaymentSession) -> PaymentSession:
        pass

    @abstractmethod
    async def find_by_reference(self, reference: str) -> Optional[PaymentSession]:
        """Expired sessions are never returned."""
        pass

    @abstractmethod
    async def delete(self, reference: str) -> bool:
        pass

    @abstractmethod
    async def delete_for_order(self, order_id: str) -> int:
        pass

    @abstractmethod
    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        pass


class IUserStore(ABC):

    @abstractmethod
    async def find_by_id(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def authenticate(self, token: str) -> Optional[User]:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
        pass


class IStore(ABC):
    """Bundle of stores plus the unit-of-work boundary."""

    catalog: ICatalogStore
    orders: IOrderStore
    sessions: IPaymentSessionStore
    users: IUserStore
    audit: IAuditLog

    @abstractmethod
    def transaction(self) -> "AsyncIterator[IStore]":
        """
        Async context manager yielding a store bound to one transaction.
        Everything done through it commits together or not at all.
        """
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

_SLUG = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class InMemoryCatalogStore(ICatalogStore):

    def __init__(self, products: Dict[str, CatalogEntry], journal: Optional[UndoJournal] = None):
        self._products = products
        self._journal = journal

    def _record(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    def is_well_formed_key(self, product_id: str) -> bool:
        return isinstance(product_id, str) and bool(_SLUG.match(product_id))

    async def find_by_id(self, product_id: str) -> Optional[CatalogEntry]:
        entry = self._products.get(product_id)
        return entry.model_copy(deep=True) if entry else None

    async def create(self, entry: CatalogEntry) -> CatalogEntry:
        entry = entry.model_copy(update={"status": status_after_decrement(entry.stock, entry.status)})
        self._products[entry.id] = entry
        self._record(lambda: self._products.pop(entry.id, None))
        return entry.model_copy(deep=True)

    async def update(self, product_id: str, changes: ProductUpdate) -> Optional[CatalogEntry]:
        current = self._products.get(product_id)
        if current is None:
            return None
        fields = changes.model_dump(exclude_none=True)
        updated = current.model_copy(update={**fields, "updated_at": utcnow()})
        # an explicit admin status wins unless stock is exhausted; hidden always wins
        if updated.stock == 0 or (changes.stock is not None and changes.status is None):
            updated = updated.model_copy(update={
                "status": status_for_stock(updated.stock, updated.status),
            })
        self._products[product_id] = updated
        self._record(lambda: self._products.__setitem__(product_id, current))
        return updated.model_copy(deep=True)

    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        current = self._products.get(product_id)
        if current is None or quantity <= 0 or current.stock < quantity:
            return False
        stock = current.stock - quantity
        self._products[product_id] = current.model_copy(update={
            "stock": stock,
            "status": status_after_decrement(stock, current.status),
            "updated_at": utcnow(),
        })
        self._record(lambda: self._restore(product_id, quantity, current.status))
        return True

    async def increment_stock(self, product_id: str, quantity: int) -> bool:
        current = self._products.get(product_id)
        if current is None:
            return False
        stock = current.stock + quantity
        self._products[product_id] = current.model_copy(update={
            "stock": stock,
            "status": status_for_stock(stock, current.status),
            "updated_at": utcnow(),
        })
        self._record(lambda: self._undo_increment(product_id, quantity, current.status))
        return True

    def _restore(self, product_id: str, quantity: int, status: ProductStatus) -> None:
        entry = self._products.get(product_id)
        if entry is not None:
            self._products[product_id] = entry.model_copy(update={
                "stock": entry.stock + quantity,
                "status": status,
            })

    def _undo_increment(self, product_id: str, quantity: int, status: ProductStatus) -> None:
        entry = self._products.get(product_id)
        if entry is not None:
            self._products[product_id] = entry.model_copy(update={
                "stock": max(entry.stock - quantity, 0),
                "status": status,
            })


class InMemoryOrderStore(IOrderStore):

    def __init__(
        self,
        orders: Dict[str, Order],
        by_transaction: Dict[str, str],
        journal: Optional[UndoJournal] = None,
    ):
        self._orders = orders
        self._by_transaction = by_transaction
        self._journal = journal

    def _record(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    async def create(self, order: Order) -> Order:
        return await self.save(order)

    async def find_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def find_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        order_id = self._by_transaction.get(transaction_id)
        return await self.find_by_id(order_id) if order_id else None

    async def save(self, order: Order) -> Order:
        transaction_id = order.transaction_id
        owner = self._by_transaction.get(transaction_id) if transaction_id else None
        if owner is not None and owner != order.id:
            raise DuplicateTransaction(
                f"Transaction {transaction_id} already recorded on order {owner}",
                transaction_id=transaction_id,
            )

        previous = self._orders.get(order.id)
        stored = order.model_copy(deep=True)
        self._orders[order.id] = stored
        if transaction_id:
            self._by_transaction[transaction_id] = order.id

        def undo() -> None:
            if previous is None:
                self._orders.pop(order.id, None)
            else:
                self._orders[order.id] = previous
            if transaction_id and owner is None:
                self._by_transaction.pop(transaction_id, None)

        self._record(undo)
        return stored.model_copy(deep=True)


class InMemoryPaymentSessionStore(IPaymentSessionStore):

    def __init__(self, sessions: Dict[str, PaymentSession], journal: Optional[UndoJournal] = None):
        self._sessions = sessions
        self._journal = journal

    def _record(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    async def create(self, session: PaymentSession) -> PaymentSession:
        if session.reference in self._sessions:
            raise DuplicateTransaction(
                f"Payment reference {session.reference} already exists",
                reference=session.reference,
            )
        self._sessions[session.reference] = session
        self._record(lambda: self._sessions.pop(session.reference, None))
        return session.model_copy(deep=True)

    async def find_by_reference(self, reference: str) -> Optional[PaymentSession]:
        session = self._sessions.get(reference)
        if session is None or session.is_expired():
            return None
        return session.model_copy(deep=True)

    async def delete(self, reference: str) -> bool:
        session = self._sessions.pop(reference, None)
        if session is None:
            return False
        self._record(lambda: self._sessions.__setitem__(reference, session))
        return True

    async def delete_for_order(self, order_id: str) -> int:
        references = [ref for ref, s in self._sessions.items() if s.order_id == order_id]
        for reference in references:
            await self.delete(reference)
        return len(references)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = [ref for ref, s in self._sessions.items() if s.is_expired(now)]
        for reference in expired:
            await self.delete(reference)
        if expired:
            logger.info("payment_sessions_purged", count=len(expired))
        return len(expired)


class InMemoryUserStore(IUserStore):

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._tokens: Dict[str, str] = {}

    def add(self, user: User, token: Optional[str] = None) -> User:
        self._users[user.id] = user
        if token:
            self._tokens[hash_token(token)] = user.id
        return user

    async def find_by_id(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def authenticate(self, token: str) -> Optional[User]:
        user_id = self._tokens.get(hash_token(token))
        return await self.find_by_id(user_id) if user_id else None


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._by_entity: Dict[tuple, List[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._by_entity[(entry.entity_type, entry.entity_id)].append(entry)

    async def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_entity.get((entity_type, entity_id), []))


class InMemoryStore(IStore):
    """Process-local store. Transactions are serialised and journaled."""

    def __init__(self):
        self._products: Dict[str, CatalogEntry] = {}
        self._orders: Dict[str, Order] = {}
        self._by_transaction: Dict[str, str] = {}
        self._sessions: Dict[str, PaymentSession] = {}
        self._tx_lock = asyncio.Lock()

        self.users = InMemoryUserStore()
        self.audit = InMemoryAuditLog()
        self.catalog, self.orders, self.sessions = self._bind(None)

    def seed_product(self, entry: CatalogEntry) -> CatalogEntry:
        """Synchronous catalog load for fixtures and local runs."""
        entry = entry.model_copy(update={"status": status_after_decrement(entry.stock, entry.status)})
        self._products[entry.id] = entry
        return entry

    def _bind(self, journal: Optional[UndoJournal]):
        return (
            InMemoryCatalogStore(self._products, journal),
            InMemoryOrderStore(self._orders, self._by_transaction, journal),
            InMemoryPaymentSessionStore(self._sessions, journal),
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryStore"]:
        async with self._tx_lock:
            journal: UndoJournal = []
            view = _InMemoryTransaction(self, journal)
            try:
                yield view
            except BaseException:
                for undo in reversed(journal):
                    undo()
                logger.debug("transaction_rolled_back", operations=len(journal))
                raise


class _InMemoryTransaction(IStore):
    """Store view whose writes are journaled for rollback."""

    def __init__(self, parent: InMemoryStore, journal: UndoJournal):
        self.users = parent.users
        self.audit = parent.audit
        self.catalog, self.orders, self.sessions = parent._bind(journal)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["_InMemoryTransaction"]:
        # already inside one; nested blocks join it
        yield self
