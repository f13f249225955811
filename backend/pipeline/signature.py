"""
Signature Service
=================
Integrity digests exchanged with the payment gateway.

Both digests are SHA-256 over a plain concatenation of fields followed by
the shared secret. Field order and the absence of separators are part of
the gateway contract: any deviation silently breaks every verification.
"""

import hashlib
import hmac
from typing import Union


def _digest(*parts: Union[str, int]) -> str:
    return hashlib.sha256("".join(str(p) for p in parts).encode("utf-8")).hexdigest()


def sign(reference: str, amount_in_cents: int, currency: str, secret: str) -> str:
    """Integrity signature sent with the checkout redirect."""
    return _digest(reference, amount_in_cents, currency, secret)


def webhook_checksum(
    transaction_id: str,
    status: str,
    amount_in_cents: int,
    timestamp: Union[str, int],
    secret: str,
) -> str:
    """Checksum the gateway computes over a transaction event."""
    return _digest(transaction_id, status, amount_in_cents, timestamp, secret)


def verify(
    digest: str,
    transaction_id: str,
    status: str,
    amount_in_cents: int,
    timestamp: Union[str, int],
    secret: str,
) -> bool:
    if not digest or not secret:
        return False
    expected = webhook_checksum(transaction_id, status, amount_in_cents, timestamp, secret)
    return hmac.compare_digest(expected.encode("ascii"), digest.strip().lower().encode("utf-8"))
