from decimal import Decimal
from typing import Any, Dict, Optional

import pytest

from pipeline.checkout import CheckoutOrchestrator
from pipeline.config import GatewayKeys, PaymentSettings
from pipeline.repositories import InMemoryStore
from pipeline.signature import webhook_checksum
from schemas.commerce import CatalogEntry, User, UserRole

PUBLIC_KEY = "pub_test_storefront"
INTEGRITY_SECRET = "test_integrity_secret"
EVENTS_SECRET = "test_events_secret"
FRONTEND = "http://localhost:5500"


@pytest.fixture
def settings() -> PaymentSettings:
    return PaymentSettings(
        environment="sandbox",
        keys=GatewayKeys(
            environment="sandbox",
            public_key=PUBLIC_KEY,
            integrity_secret=INTEGRITY_SECRET,
            events_secret=EVENTS_SECRET,
        ),
        default_redirect_url=f"{FRONTEND}/profile.html#orders",
        redirect_allowlist=[FRONTEND],
    )


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.users.add(
        User(id="u1", name="Buyer", email="buyer@example.com",
             shipping_address="Calle 10 # 20-30, Bogota"),
        token="user-token",
    )
    store.users.add(
        User(id="u2", name="No Address", email="noaddr@example.com"),
        token="noaddr-token",
    )
    store.users.add(
        User(id="admin1", name="Admin", email="admin@example.com", role=UserRole.ADMIN,
             shipping_address="HQ"),
        token="admin-token",
    )
    store.seed_product(CatalogEntry(id="P1", title="Mug", price=Decimal("10000"), stock=5))
    store.seed_product(CatalogEntry(id="P2", title="Poster", price=Decimal("2500.50"), stock=10))
    return store


@pytest.fixture
def checkout(store, settings) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(store, settings)


@pytest.fixture
def make_webhook():
    """Factory for gateway notifications signed with the test events secret."""

    def _make(
        reference: str,
        amount_in_cents: int,
        transaction_id: str = "tx-1001",
        status: str = "APPROVED",
        currency: str = "COP",
        timestamp: Any = 1700000000,
        event: str = "transaction.updated",
        secret: str = EVENTS_SECRET,
        checksum: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "event": event,
            "data": {
                "transaction": {
                    "id": transaction_id,
                    "status": status,
                    "amount_in_cents": amount_in_cents,
                    "reference": reference,
                    "currency": currency,
                    "payment_method_type": "CARD",
                }
            },
            "signature": {
                "checksum": checksum or webhook_checksum(
                    transaction_id, status, amount_in_cents, timestamp, secret
                ),
                "properties": ["transaction.id", "transaction.status", "transaction.amount_in_cents"],
            },
            "timestamp": timestamp,
            "environment": "test",
            "sent_at": "2024-01-01T00:00:00.000Z",
        }

    return _make
