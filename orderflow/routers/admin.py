"""
Admin / operational endpoints.

GET /admin/health
GET /admin/stock
POST /admin/reservations/release
"""
from __future__ import annotations

import logging
from typing import Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import Identity
from orderflow.database import get_db
from orderflow.deps import get_gateway, require_identity
from orderflow.errors import ForbiddenError
from orderflow.schemas import HealthResponse, StockRow
from orderflow.services import inventory, lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


@router.get("/stock", response_model=List[StockRow])
async def list_stock(
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> List[StockRow]:
    if not identity.is_admin:
        raise ForbiddenError("Admin only")
    return [StockRow.model_validate(r) for r in await inventory.list_stock(db)]


@router.post("/reservations/release")
async def release_reservations(
    identity: Identity = Depends(require_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, List[str]]:
    """Cancel unpaid orders whose stock reservation deadline has passed."""
    if not identity.is_admin:
        raise ForbiddenError("Admin only")
    released = await lifecycle.release_expired_reservations(db, gateway)
    if released:
        logger.info("Released %d expired reservation(s)", len(released))
    return {"released": released}
