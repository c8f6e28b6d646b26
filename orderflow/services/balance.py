"""
Balance payment sessions: time-limited magic links that let a buyer pay the
remaining balance of a deposit order, optionally after changing the
shipping address.

Only an HMAC of the bearer token is stored. Expiry is checked lazily on
every access, so no background sweeper is needed.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import ROLE_BUYER, Identity
from orderflow.config import get_settings
from orderflow.errors import (
    ConflictError,
    ForbiddenError,
    GatewayError,
    NotFoundError,
    SessionExpiredError,
)
from orderflow.models import AddressChange, BalanceRequest, Order, Payment, as_utc
from orderflow.services import lifecycle
from orderflow.services.pricing import ORDER_CANCELLED, PricingSnapshot

logger = logging.getLogger(__name__)
settings = get_settings()

REQUEST_ACTIVE = "active"
REQUEST_PAID = "paid"
REQUEST_SUPERSEDED = "superseded"


@dataclass(frozen=True)
class BalanceSession:
    order_id: str
    balance_request_id: str
    currency: str
    subtotal_before_tax: int
    shipping_cost: int
    tax_amount: int
    total: int
    amount_paid: int
    remaining_balance: int
    shipping_address: Dict[str, Any]
    can_change_address: bool
    expires_at: datetime
    snapshot_version: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    return hmac.new(
        settings.balance_session_secret.encode(), token.encode(), hashlib.sha256
    ).hexdigest()


def build_link(order_id: str, token: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/orders/{order_id}/balance?token={token}"


# ── Issuing ──────────────────────────────────────────────────────────────────

async def request_balance(
    session: AsyncSession,
    order_id: str,
    requested_by: str,
    can_change_address: bool = True,
) -> Tuple[BalanceRequest, str]:
    """
    Issue a new balance request for *order_id*, superseding any older active
    one. Returns the request and the plain token (never stored).
    """
    order = await lifecycle.get_order(session, order_id)
    if order.status == ORDER_CANCELLED:
        raise ConflictError("Order is cancelled", code="order_cancelled")
    if order.deposit_amount <= 0:
        raise ConflictError("Order was not placed with a deposit", code="no_deposit")
    if order.amount_paid <= 0:
        raise ConflictError("Deposit has not been paid yet", code="deposit_not_paid")
    if order.remaining_balance <= 0:
        raise ConflictError("Balance is already settled", code="balance_already_settled")

    await session.execute(
        update(BalanceRequest)
        .where(BalanceRequest.order_id == order.id, BalanceRequest.status == REQUEST_ACTIVE)
        .values(status=REQUEST_SUPERSEDED)
        .execution_options(synchronize_session=False)
    )

    token = secrets.token_hex(32)
    balance_request = BalanceRequest(
        order_id=order.id,
        token_hash=hash_token(token),
        status=REQUEST_ACTIVE,
        expires_at=_now() + timedelta(days=settings.balance_session_ttl_days),
        can_change_address=can_change_address,
        requested_by=requested_by,
    )
    session.add(balance_request)
    await session.flush()

    logger.info(
        "Balance requested: order=%s request=%s by=%s remaining=%d expires=%s",
        order.id, balance_request.id, requested_by,
        order.remaining_balance, balance_request.expires_at.isoformat(),
    )
    return balance_request, token


async def ensure_balance_request(
    session: AsyncSession, order: Order, requested_by: str
) -> Optional[Tuple[BalanceRequest, str]]:
    """
    Issue a balance request when a deposit order starts shipping, unless an
    unexpired one is already active.
    """
    if order.deposit_amount <= 0 or order.amount_paid <= 0 or order.remaining_balance <= 0:
        return None

    active = (
        await session.execute(
            select(BalanceRequest).where(
                BalanceRequest.order_id == order.id,
                BalanceRequest.status == REQUEST_ACTIVE,
            )
        )
    ).scalars().all()
    if any(as_utc(r.expires_at) > _now() for r in active):
        return None
    return await request_balance(session, order.id, requested_by)


# ── Resolving ────────────────────────────────────────────────────────────────

async def resolve_session(
    session: AsyncSession,
    order_id: str,
    token: Optional[str],
    identity: Optional[Identity],
) -> Tuple[Order, BalanceRequest]:
    """
    Find the balance request a caller may act on. A valid token is enough on
    its own; without one the caller must be a party to the order and the
    latest request wins.
    """
    order = await lifecycle.get_order(session, order_id)

    if token:
        balance_request = (
            await session.execute(
                select(BalanceRequest)
                .where(BalanceRequest.token_hash == hash_token(token))
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if balance_request is None or balance_request.order_id != order.id:
            raise NotFoundError("Balance session not found", code="balance_session_not_found")
    else:
        if identity is None:
            raise ForbiddenError("A balance link or a signed-in buyer is required")
        if not identity.is_admin:
            if identity.role == ROLE_BUYER and identity.subject_id != order.buyer_id:
                raise ForbiddenError("This balance session belongs to another buyer")
            if identity.role != ROLE_BUYER and identity.subject_id != order.seller_id:
                raise ForbiddenError("Not a party to this order")
        balance_request = (
            await session.execute(
                select(BalanceRequest)
                .where(BalanceRequest.order_id == order.id)
                .order_by(BalanceRequest.created_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if balance_request is None:
            raise NotFoundError("Balance session not found", code="balance_session_not_found")

    if balance_request.status == REQUEST_SUPERSEDED:
        raise SessionExpiredError(
            "This balance link was replaced by a newer one", code="balance_session_superseded"
        )
    if as_utc(balance_request.expires_at) <= _now():
        raise SessionExpiredError("This balance link has expired")

    if balance_request.status == REQUEST_PAID or order.remaining_balance <= 0:
        raise ConflictError("Balance is already settled", code="balance_already_settled")
    if order.status == ORDER_CANCELLED:
        raise ConflictError("Order is cancelled", code="order_cancelled")

    return order, balance_request


def session_view(order: Order, balance_request: BalanceRequest) -> BalanceSession:
    return BalanceSession(
        order_id=order.id,
        balance_request_id=balance_request.id,
        currency=order.currency,
        subtotal_before_tax=order.subtotal_before_tax,
        shipping_cost=order.shipping_cost,
        tax_amount=order.tax_amount,
        total=order.total,
        amount_paid=order.amount_paid,
        remaining_balance=order.remaining_balance,
        shipping_address=dict(order.shipping_address),
        can_change_address=balance_request.can_change_address,
        expires_at=as_utc(balance_request.expires_at),
        snapshot_version=order.snapshot_version,
    )


async def open_session(
    session: AsyncSession,
    order_id: str,
    token: Optional[str],
    identity: Optional[Identity],
) -> BalanceSession:
    order, balance_request = await resolve_session(session, order_id, token, identity)
    return session_view(order, balance_request)


# ── Address change ───────────────────────────────────────────────────────────

async def _invalidate_open_intents(session: AsyncSession, gateway, order: Order) -> int:
    open_payments = [
        p for p in await lifecycle.list_payments(session, order.id)
        if p.purpose == lifecycle.PURPOSE_BALANCE
        and p.status in (lifecycle.INTENT_OPEN, lifecycle.INTENT_FAILED)
    ]
    for payment in open_payments:
        try:
            await gateway.cancel_intent(payment.intent_id, f"cancel:{payment.intent_id}")
        except GatewayError:
            intent = await gateway.retrieve_intent(payment.intent_id)
            if intent.status == "succeeded":
                raise ConflictError(
                    "A balance payment is already being processed",
                    code="payment_in_flight",
                )
            if intent.status != "canceled":
                raise
        payment.status = lifecycle.INTENT_CANCELLED
        logger.info(
            "Balance intent invalidated: order=%s intent=%s", order.id, payment.intent_id
        )
    return len(open_payments)


async def change_address(
    session: AsyncSession,
    gateway,
    quoter,
    balance_request: BalanceRequest,
    new_address: Dict[str, Any],
) -> Order:
    """
    Re-quote shipping for *new_address* and replace the pricing snapshot.

    Every unconfirmed balance intent is cancelled first; the snapshot is then
    written with a compare-and-set on ``snapshot_version``.
    """
    if not balance_request.can_change_address:
        raise ConflictError("The shipping address can no longer be changed", code="address_locked")

    order = await lifecycle.get_order(session, balance_request.order_id)
    snapshot = PricingSnapshot.from_order(order)
    new_cost = quoter.quote(new_address)
    updated = snapshot.with_shipping(new_cost)

    previous_address = dict(order.shipping_address)
    previous_version = order.snapshot_version

    await _invalidate_open_intents(session, gateway, order)

    result = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.snapshot_version == previous_version,
            Order.amount_paid == snapshot.amount_paid,
        )
        .values(
            **updated.as_columns(),
            shipping_address=new_address,
            snapshot_version=previous_version + 1,
            stripe_balance_payment_intent_id=None,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Order changed while updating the address", code="snapshot_changed")

    session.add(
        AddressChange(
            order_id=order.id,
            balance_request_id=balance_request.id,
            previous_address=previous_address,
            new_address=new_address,
            previous_shipping_cost=snapshot.shipping_cost,
            new_shipping_cost=new_cost,
        )
    )
    await session.flush()
    await session.refresh(order)

    logger.info(
        "Address changed: order=%s version=%d shipping=%d->%d remaining=%d",
        order.id, order.snapshot_version, snapshot.shipping_cost, new_cost,
        order.remaining_balance,
    )
    return order


# ── Paying ───────────────────────────────────────────────────────────────────

async def pay_balance(
    session: AsyncSession, gateway, balance_request: BalanceRequest
) -> Payment:
    """Intent for exactly the remaining balance; an equivalent open intent is reused."""
    order = await lifecycle.get_order(session, balance_request.order_id)
    if order.remaining_balance <= 0:
        raise ConflictError("Balance is already settled", code="balance_already_settled")

    candidates = [
        p for p in await lifecycle.list_payments(session, order.id, lifecycle.INTENT_OPEN)
        if p.purpose == lifecycle.PURPOSE_BALANCE
        and p.amount == order.remaining_balance
        and p.snapshot_version == order.snapshot_version
    ]
    for payment in reversed(candidates):
        intent = await gateway.retrieve_intent(payment.intent_id)
        if intent.status == "succeeded":
            raise ConflictError(
                "A balance payment is already being processed", code="payment_in_flight"
            )
        if intent.status == "canceled":
            payment.status = lifecycle.INTENT_CANCELLED
            continue
        logger.info("Reusing balance intent: order=%s intent=%s", order.id, payment.intent_id)
        return payment

    return await lifecycle.open_payment_intent(
        session,
        gateway,
        order,
        lifecycle.PURPOSE_BALANCE,
        order.remaining_balance,
        balance_request=balance_request,
    )
