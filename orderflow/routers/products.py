"""
Stock endpoints.

GET /api/products/{product_id}/stock-availability?variantId=
PUT /api/products/{product_id}/stock
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import Identity
from orderflow.database import get_db
from orderflow.deps import require_identity
from orderflow.errors import ForbiddenError
from orderflow.schemas import StockAvailabilityOut, StockRow, StockUpdate
from orderflow.services import inventory

router = APIRouter(prefix="/api/products", tags=["products"])


@router.get("/{product_id}/stock-availability", response_model=StockAvailabilityOut)
async def stock_availability(
    product_id: str,
    variant_id: Optional[str] = Query(default=None, alias="variantId"),
    db: AsyncSession = Depends(get_db),
) -> StockAvailabilityOut:
    availability = await inventory.check_availability(db, product_id, variant_id)
    return StockAvailabilityOut.model_validate(availability)


@router.put("/{product_id}/stock", response_model=StockRow)
async def set_stock(
    product_id: str,
    body: StockUpdate,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> StockRow:
    product = await inventory.get_product(db, product_id)
    if not (identity.is_admin or identity.subject_id == product.seller_id):
        raise ForbiddenError("Only the selling party may change stock")
    row = await inventory.set_total_stock(db, product_id, body.variant_id, body.total_stock)
    return StockRow.model_validate(row)
