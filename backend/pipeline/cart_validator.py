"""
Cart Validator
==============
Turns a client cart into catalog snapshots and an authoritative total.

Lines for the same product are merged first so stock is checked against the
real demand. Validation is all-or-nothing: every failing line is collected
and reported together in one CartRejected error.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Union

import structlog
from pydantic import BaseModel

from pipeline.errors import (
    CartRejected,
    EmptyCart,
    InvalidQuantity,
    InvalidReference,
    LineItemIssue,
    NotFoundError,
    Unavailable,
)
from pipeline.repositories import ICatalogStore
from schemas.commerce import (
    CartLine,
    OrderLineSnapshot,
    ProductStatus,
    snapshot_amount_in_cents,
    snapshot_total,
)

logger = structlog.get_logger().bind(component="cart_validator")


class ValidatedCart(BaseModel):
    items: List[OrderLineSnapshot]
    total: Decimal
    amount_in_cents: int


def merge_lines(lines: Iterable[Union[CartLine, dict]]) -> List[CartLine]:
    """
    Sum quantities of repeated products, keeping first-seen order.
    Non-positive quantities are kept as separate lines so they still fail.
    """
    merged: Dict[str, CartLine] = {}
    result: List[CartLine] = []
    for raw in lines:
        line = raw if isinstance(raw, CartLine) else CartLine.model_validate(raw)
        if line.quantity <= 0:
            result.append(line)
            continue
        existing = merged.get(line.product_id)
        if existing is None:
            merged[line.product_id] = line.model_copy()
            result.append(merged[line.product_id])
        else:
            existing.quantity += line.quantity
    return result


async def validate_cart(
    lines: Iterable[Union[CartLine, dict]],
    catalog: ICatalogStore,
) -> ValidatedCart:
    cart = merge_lines(lines)
    if not cart:
        raise EmptyCart("Cart is empty.")

    issues: List[LineItemIssue] = []
    snapshots: List[OrderLineSnapshot] = []

    for line in cart:
        product_id = line.product_id

        if not catalog.is_well_formed_key(product_id):
            issues.append(LineItemIssue(
                product_id, InvalidReference.code, f"Invalid product reference: {product_id!r}.",
            ))
            continue

        entry = await catalog.find_by_id(product_id)
        if entry is None:
            issues.append(LineItemIssue(
                product_id, NotFoundError.code, f"Product {product_id} does not exist.",
            ))
            continue

        if entry.status != ProductStatus.ACTIVE or line.quantity > entry.stock:
            issues.append(LineItemIssue(
                product_id, Unavailable.code,
                f"Product {entry.title!r} is not available in the requested quantity.",
            ))
            continue

        if line.quantity <= 0:
            issues.append(LineItemIssue(
                product_id, InvalidQuantity.code, f"Invalid quantity for {entry.title!r}.",
            ))
            continue

        snapshots.append(OrderLineSnapshot.from_catalog(entry, line.quantity))

    if issues:
        logger.info("cart_rejected",
                    lines=len(cart),
                    codes=[issue.code for issue in issues])
        raise CartRejected(issues)

    return ValidatedCart(
        items=snapshots,
        total=snapshot_total(snapshots),
        amount_in_cents=snapshot_amount_in_cents(snapshots),
    )
