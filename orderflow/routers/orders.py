"""
Order endpoints.

POST  /api/orders
GET   /api/orders/{order_id}
POST  /api/orders/{order_id}/payments/{intent_id}/sync
PATCH /api/orders/{order_id}/items/{item_id}
POST  /api/orders/{order_id}/balance-requests
POST  /api/orders/{order_id}/cancel
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import ROLE_SELLER, Identity, ensure_order_party, ensure_order_seller
from orderflow.database import get_db
from orderflow.deps import get_gateway, require_identity
from orderflow.errors import ForbiddenError
from orderflow.models import Order
from orderflow.schemas import (
    BalanceRequestCreate,
    BalanceRequestOut,
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    ItemStatusUpdate,
    OrderItemOut,
    OrderOut,
)
from orderflow.services import balance, lifecycle, refunds
from orderflow.services.pricing import ITEM_SHIPPED, ORDER_PENDING

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


async def order_out(db: AsyncSession, order: Order) -> OrderOut:
    items = await lifecycle.get_order_items(db, order.id)
    return OrderOut.model_validate(order).model_copy(
        update={"items": [OrderItemOut.model_validate(i) for i in items]}
    )


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    body: CheckoutRequest,
    identity: Identity = Depends(require_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> CheckoutResponse:
    if identity.role == ROLE_SELLER:
        raise ForbiddenError("Sellers cannot place orders")
    order, payment = await lifecycle.create_order(db, gateway, identity.subject_id, body)
    return CheckoutResponse(
        order=await order_out(db, order),
        payment_intent_id=payment.intent_id,
        client_secret=payment.client_secret,
        amount_due=payment.amount,
        purpose=payment.purpose,
    )


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: str,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    order = await lifecycle.get_order(db, order_id)
    ensure_order_party(identity, order)
    return await order_out(db, order)


@router.post("/{order_id}/payments/{intent_id}/sync", response_model=OrderOut)
async def sync_payment(
    order_id: str,
    intent_id: str,
    identity: Identity = Depends(require_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    order = await lifecycle.get_order(db, order_id)
    ensure_order_party(identity, order)
    order = await lifecycle.sync_payment(db, gateway, order_id, intent_id)
    return await order_out(db, order)


@router.patch("/{order_id}/items/{item_id}", response_model=OrderOut)
async def update_item(
    order_id: str,
    item_id: str,
    body: ItemStatusUpdate,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    order = await lifecycle.get_order(db, order_id)
    ensure_order_seller(identity, order)
    order, item, changed = await lifecycle.update_item_status(
        db, order_id, item_id, body.item_status, body.tracking_number, body.carrier
    )
    if changed and item.item_status == ITEM_SHIPPED:
        issued = await balance.ensure_balance_request(db, order, identity.subject_id)
        if issued is not None:
            logger.info("Balance link issued on shipment: order=%s", order.id)
    return await order_out(db, order)


@router.post(
    "/{order_id}/balance-requests",
    response_model=BalanceRequestOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_balance_request(
    order_id: str,
    body: BalanceRequestCreate,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> BalanceRequestOut:
    order = await lifecycle.get_order(db, order_id)
    ensure_order_seller(identity, order)
    balance_request, token = await balance.request_balance(
        db, order_id, identity.subject_id, body.can_change_address
    )
    return BalanceRequestOut(
        id=balance_request.id,
        order_id=order_id,
        status=balance_request.status,
        expires_at=balance_request.expires_at,
        can_change_address=balance_request.can_change_address,
        token=token,
        link=balance.build_link(order_id, token),
    )


@router.post("/{order_id}/cancel", response_model=OrderOut)
async def cancel_order(
    order_id: str,
    body: CancelRequest,
    identity: Identity = Depends(require_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    order = await lifecycle.get_order(db, order_id)
    ensure_order_party(identity, order)
    is_seller = identity.is_admin or identity.subject_id == order.seller_id
    if not is_seller and order.status != ORDER_PENDING:
        raise ForbiddenError("Buyers can only cancel orders that are still pending")
    order = await refunds.cancel_order(db, gateway, order_id, body.reason, identity.subject_id)
    return await order_out(db, order)
