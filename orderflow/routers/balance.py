"""
Balance payment session endpoints (magic link or signed-in buyer).

GET   /api/orders/{order_id}/balance-session?token=
PATCH /api/orders/{order_id}/balance-session/address?token=
POST  /api/orders/{order_id}/pay-balance?token=
"""
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import Identity
from orderflow.database import get_db
from orderflow.deps import get_gateway, get_identity, get_quoter
from orderflow.schemas import AddressChangeRequest, BalancePaymentOut, BalanceSessionOut
from orderflow.services import balance

router = APIRouter(prefix="/api/orders", tags=["balance"])


@router.get("/{order_id}/balance-session", response_model=BalanceSessionOut)
async def open_balance_session(
    order_id: str,
    token: Optional[str] = Query(default=None),
    identity: Optional[Identity] = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> BalanceSessionOut:
    view = await balance.open_session(db, order_id, token, identity)
    return BalanceSessionOut(**asdict(view))


@router.patch("/{order_id}/balance-session/address", response_model=BalanceSessionOut)
async def change_address(
    order_id: str,
    body: AddressChangeRequest,
    token: Optional[str] = Query(default=None),
    identity: Optional[Identity] = Depends(get_identity),
    gateway=Depends(get_gateway),
    quoter=Depends(get_quoter),
    db: AsyncSession = Depends(get_db),
) -> BalanceSessionOut:
    _, balance_request = await balance.resolve_session(db, order_id, token, identity)
    order = await balance.change_address(
        db, gateway, quoter, balance_request, body.shipping_address.model_dump()
    )
    return BalanceSessionOut(**asdict(balance.session_view(order, balance_request)))


@router.post("/{order_id}/pay-balance", response_model=BalancePaymentOut)
async def pay_balance(
    order_id: str,
    token: Optional[str] = Query(default=None),
    identity: Optional[Identity] = Depends(get_identity),
    gateway=Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
) -> BalancePaymentOut:
    _, balance_request = await balance.resolve_session(db, order_id, token, identity)
    payment = await balance.pay_balance(db, gateway, balance_request)
    return BalancePaymentOut(
        order_id=order_id,
        payment_intent_id=payment.intent_id,
        client_secret=payment.client_secret,
        amount=payment.amount,
        currency=payment.currency,
    )
