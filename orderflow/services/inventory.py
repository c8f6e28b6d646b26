"""
Stock ledger: availability queries and guarded stock mutations.

Every mutation is a single conditional UPDATE whose WHERE clause carries the
invariant (available stock never below zero), so two concurrent checkouts for
the last unit cannot both succeed; the loser matches zero rows.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.errors import ConflictError, NotFoundError, ValidationError
from orderflow.models import Product, StockRecord
from orderflow.services.variants import normalize_variant_id

logger = logging.getLogger(__name__)

STOCK_GATED_TYPE = "in_stock"


def is_stock_gated(product: Product) -> bool:
    """Only in-stock products are limited by stock; the rest are produced to order."""
    return product.fulfillment_type == STOCK_GATED_TYPE


@dataclass(frozen=True)
class Availability:
    product_id: str
    variant_key: str
    fulfillment_type: str
    total_stock: int
    reserved_stock: int
    sold_stock: int
    available_stock: int
    is_available: bool


async def get_product(session: AsyncSession, product_id: str) -> Product:
    product = await session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id!r} not found")
    return product


async def check_availability(
    session: AsyncSession, product_id: str, variant_id: Optional[str] = None
) -> Availability:
    """Read-only availability for a product or one of its variants."""
    product = await get_product(session, product_id)
    key = normalize_variant_id(product.variant_schema, variant_id)

    row = await session.get(StockRecord, (product_id, key), populate_existing=True)
    total = row.total_stock if row else 0
    reserved = row.reserved_stock if row else 0
    sold = row.sold_stock if row else 0
    available = total - reserved - sold

    if available < 0:
        # Only reachable if the CHECK constraint was bypassed.
        logger.error(
            "Negative availability for product=%s variant=%r: total=%d reserved=%d sold=%d",
            product_id, key, total, reserved, sold,
        )

    is_available = available > 0 if is_stock_gated(product) else True

    return Availability(
        product_id=product_id,
        variant_key=key,
        fulfillment_type=product.fulfillment_type,
        total_stock=total,
        reserved_stock=reserved,
        sold_stock=sold,
        available_stock=max(available, 0),
        is_available=is_available,
    )


async def reserve_stock(
    session: AsyncSession, product_id: str, variant_key: str, quantity: int
) -> None:
    """
    Hold *quantity* units for a pending order.

    Raises ConflictError(variant_sold_out) if fewer units are available.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive")

    result = await session.execute(
        update(StockRecord)
        .where(
            StockRecord.product_id == product_id,
            StockRecord.variant_key == variant_key,
            StockRecord.total_stock - StockRecord.reserved_stock - StockRecord.sold_stock
            >= quantity,
        )
        .values(reserved_stock=StockRecord.reserved_stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "Stock conflict: product=%s variant=%r qty=%d", product_id, variant_key, quantity
        )
        raise ConflictError(
            "Not enough stock for the selected option; please choose another option",
            code="variant_sold_out",
        )

    logger.info("Reserved stock: product=%s variant=%r qty=%d", product_id, variant_key, quantity)


async def _guarded_move(
    session: AsyncSession,
    product_id: str,
    variant_key: str,
    guard,
    values: dict,
    action: str,
    quantity: int,
) -> None:
    result = await session.execute(
        update(StockRecord)
        .where(
            StockRecord.product_id == product_id,
            StockRecord.variant_key == variant_key,
            guard,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error(
            "Stock %s refused: product=%s variant=%r qty=%d",
            action, product_id, variant_key, quantity,
        )
        raise ConflictError(f"Stock ledger refused {action}", code="stock_ledger_conflict")
    logger.info("Stock %s: product=%s variant=%r qty=%d", action, product_id, variant_key, quantity)


async def commit_reservation(
    session: AsyncSession, product_id: str, variant_key: str, quantity: int
) -> None:
    """Move reserved units to sold once the order is paid."""
    await _guarded_move(
        session, product_id, variant_key,
        StockRecord.reserved_stock >= quantity,
        {
            "reserved_stock": StockRecord.reserved_stock - quantity,
            "sold_stock": StockRecord.sold_stock + quantity,
        },
        "commit", quantity,
    )


async def release_reservation(
    session: AsyncSession, product_id: str, variant_key: str, quantity: int
) -> None:
    """Give back units held by an order that was never paid."""
    await _guarded_move(
        session, product_id, variant_key,
        StockRecord.reserved_stock >= quantity,
        {"reserved_stock": StockRecord.reserved_stock - quantity},
        "release", quantity,
    )


async def restock_sold(
    session: AsyncSession, product_id: str, variant_key: str, quantity: int
) -> None:
    """Return sold-but-unshipped units of a cancelled order."""
    await _guarded_move(
        session, product_id, variant_key,
        StockRecord.sold_stock >= quantity,
        {"sold_stock": StockRecord.sold_stock - quantity},
        "restock", quantity,
    )


async def set_total_stock(
    session: AsyncSession, product_id: str, variant_id: Optional[str], total_stock: int
) -> StockRecord:
    """
    Set the physical stock count. Refuses totals below what is already held
    or sold, which would make availability negative.
    """
    if total_stock < 0:
        raise ValidationError("total_stock must not be negative")

    product = await get_product(session, product_id)
    key = normalize_variant_id(product.variant_schema, variant_id)

    row = await session.get(StockRecord, (product_id, key), populate_existing=True)
    if row is None:
        row = StockRecord(
            product_id=product_id, variant_key=key,
            total_stock=total_stock, reserved_stock=0, sold_stock=0,
        )
        session.add(row)
        await session.flush()
        logger.info("Stock created: product=%s variant=%r total=%d", product_id, key, total_stock)
        return row

    result = await session.execute(
        update(StockRecord)
        .where(
            StockRecord.product_id == product_id,
            StockRecord.variant_key == key,
            StockRecord.reserved_stock + StockRecord.sold_stock <= total_stock,
        )
        .values(total_stock=total_stock)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            "total_stock is below units already reserved or sold",
            code="stock_below_committed",
        )
    await session.refresh(row)
    logger.info("Stock set: product=%s variant=%r total=%d", product_id, key, total_stock)
    return row


async def list_stock(session: AsyncSession) -> List[StockRecord]:
    return list(
        (
            await session.execute(
                select(StockRecord).order_by(StockRecord.product_id, StockRecord.variant_key)
            )
        ).scalars().all()
    )
