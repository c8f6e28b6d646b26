"""
Refund endpoints for the retail and wholesale channels.

POST/GET /api/orders/{order_id}/refunds
POST/GET /api/wholesale/orders/{order_id}/refunds
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import Identity, ensure_order_seller
from orderflow.database import get_db
from orderflow.deps import get_gateway, require_identity
from orderflow.errors import NotFoundError
from orderflow.models import Order
from orderflow.routers.orders import order_out
from orderflow.schemas import RefundCreate, RefundOut, RefundResultOut
from orderflow.services import lifecycle, refunds

router = APIRouter(tags=["refunds"])


async def _channel_order(db: AsyncSession, order_id: str, channel: str) -> Order:
    order = await lifecycle.get_order(db, order_id)
    if order.channel != channel:
        raise NotFoundError(f"No {channel} order {order_id!r}")
    return order


async def _refund(
    db: AsyncSession, gateway, identity: Identity, order_id: str, channel: str, body: RefundCreate
) -> RefundResultOut:
    order = await _channel_order(db, order_id, channel)
    ensure_order_seller(identity, order)
    result = await refunds.process_refund(
        db, gateway, order_id, body.refund_type, body.reason, body.custom_amount,
        identity.subject_id,
    )
    return RefundResultOut(
        refund=RefundOut.model_validate(result.refund),
        refunds=[RefundOut.model_validate(r) for r in result.refunds],
        refund_amount=result.refund_amount,
        stripe_refund_id=result.stripe_refund_id,
        status=result.status,
        order=await order_out(db, result.order),
    )


async def _list(
    db: AsyncSession, identity: Identity, order_id: str, channel: str
) -> List[RefundOut]:
    order = await _channel_order(db, order_id, channel)
    ensure_order_seller(identity, order)
    return [RefundOut.model_validate(r) for r in await refunds.list_refunds(db, order_id)]


@router.post("/api/orders/{order_id}/refunds", response_model=RefundResultOut)
async def create_refund(
    order_id: str,
    body: RefundCreate,
    identity: Identity = Depends(require_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> RefundResultOut:
    return await _refund(db, gateway, identity, order_id, "retail", body)


@router.get("/api/orders/{order_id}/refunds", response_model=List[RefundOut])
async def list_refunds(
    order_id: str,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> List[RefundOut]:
    return await _list(db, identity, order_id, "retail")


@router.post("/api/wholesale/orders/{order_id}/refunds", response_model=RefundResultOut)
async def create_wholesale_refund(
    order_id: str,
    body: RefundCreate,
    identity: Identity = Depends(require_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> RefundResultOut:
    return await _refund(db, gateway, identity, order_id, "wholesale", body)


@router.get("/api/wholesale/orders/{order_id}/refunds", response_model=List[RefundOut])
async def list_wholesale_refunds(
    order_id: str,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> List[RefundOut]:
    return await _list(db, identity, order_id, "wholesale")
