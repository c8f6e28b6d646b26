"""
Order lifecycle: checkout, payment confirmation, item fulfillment and the
status effects of refunds and cancellation.

This module is the only writer of ``Order.status``, ``payment_status`` and
``fulfillment_status``. Snapshot writes are compare-and-set on
(``amount_paid``, ``snapshot_version``) so a concurrent re-snapshot or a
duplicate confirmation can never be half-applied.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import get_settings
from orderflow.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from orderflow.models import BalanceRequest, Order, OrderItem, Payment, Product
from orderflow.schemas import CheckoutRequest
from orderflow.services import inventory
from orderflow.services.pricing import (
    DEPOSIT_FULFILLMENT_TYPES,
    ITEM_DELIVERED,
    ITEM_PENDING,
    ITEM_SHIPPED,
    ORDER_CANCELLED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    PAYMENT_DEPOSIT_PAID,
    PAYMENT_FULLY_PAID,
    PAYMENT_PARTIALLY_REFUNDED,
    PricingSnapshot,
    derive_fulfillment_status,
    derive_order_status,
    derive_payment_status,
)
from orderflow.services.variants import normalize_variant_id, variant_key

logger = logging.getLogger(__name__)
settings = get_settings()

PURPOSE_DEPOSIT = "deposit"
PURPOSE_BALANCE = "balance"
PURPOSE_FULL = "full"

INTENT_OPEN = "requires_payment"
INTENT_SUCCEEDED = "succeeded"
INTENT_FAILED = "failed"
INTENT_CANCELLED = "cancelled"

# Payment states that allow items to move toward the buyer
FULFILLABLE_PAYMENT_STATUSES = frozenset(
    {PAYMENT_DEPOSIT_PAID, PAYMENT_FULLY_PAID, PAYMENT_PARTIALLY_REFUNDED}
)

_NEXT_ITEM_STATUS = {ITEM_PENDING: ITEM_SHIPPED, ITEM_SHIPPED: ITEM_DELIVERED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────

async def get_order(session: AsyncSession, order_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError(f"Order {order_id!r} not found")
    return order


async def get_order_items(session: AsyncSession, order_id: str) -> List[OrderItem]:
    return list(
        (
            await session.execute(
                select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
            )
        ).scalars().all()
    )


async def get_payment_by_intent(session: AsyncSession, intent_id: str) -> Payment:
    payment = (
        await session.execute(
            select(Payment)
            .where(Payment.intent_id == intent_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if payment is None:
        raise NotFoundError(f"Payment intent {intent_id!r} not found", code="unknown_payment_intent")
    return payment


async def list_payments(
    session: AsyncSession, order_id: str, status: Optional[str] = None
) -> List[Payment]:
    stmt = select(Payment).where(Payment.order_id == order_id)
    if status is not None:
        stmt = stmt.where(Payment.status == status)
    stmt = stmt.order_by(Payment.created_at).execution_options(populate_existing=True)
    return list((await session.execute(stmt)).scalars().all())


# ── Checkout ─────────────────────────────────────────────────────────────────

async def create_order(
    session: AsyncSession, gateway, buyer_id: str, request: CheckoutRequest
) -> Tuple[Order, Payment]:
    """
    Reserve stock, capture the pricing snapshot, persist the order and open
    the first payment intent (deposit when any product takes one, else the
    full total).

    Raises before anything is committed; the caller's transaction rolls back
    reservations if the gateway call fails.
    """
    products: Dict[str, Product] = {}
    for item in request.items:
        if item.product_id not in products:
            products[item.product_id] = await inventory.get_product(session, item.product_id)

    sellers = {p.seller_id for p in products.values()}
    if len(sellers) != 1:
        raise ValidationError("All items must come from a single seller", code="multiple_sellers")
    currencies = {p.currency for p in products.values()}
    if len(currencies) != 1:
        raise ValidationError("All items must share one currency", code="mixed_currency")

    lines = []
    subtotal = 0
    deposit = 0
    for item in request.items:
        product = products[item.product_id]
        if item.variant_id is not None:
            key = normalize_variant_id(product.variant_schema, item.variant_id)
        else:
            key = variant_key(product.variant_schema, item.size, item.color)

        unit_price = product.unit_price
        if request.channel == "wholesale":
            if product.wholesale_unit_price is None:
                raise ValidationError(
                    f"Product {product.id!r} is not offered wholesale", code="not_wholesale"
                )
            unit_price = product.wholesale_unit_price

        if product.fulfillment_type in DEPOSIT_FULFILLMENT_TYPES and product.deposit_amount:
            deposit += product.deposit_amount * item.quantity

        line_subtotal = unit_price * item.quantity
        subtotal += line_subtotal
        lines.append((product, key, item.quantity, unit_price, line_subtotal))

    snapshot = PricingSnapshot.capture(
        subtotal_before_tax=subtotal,
        shipping_cost=request.shipping_cost,
        tax_amount=request.tax_amount,
        deposit_amount=deposit,
    )

    # Fixed lock order across carts
    reserved = False
    for product, key, quantity, _, _ in sorted(lines, key=lambda line: (line[0].id, line[1])):
        if inventory.is_stock_gated(product):
            await inventory.reserve_stock(session, product.id, key, quantity)
            reserved = True

    order = Order(
        channel=request.channel,
        buyer_id=buyer_id,
        seller_id=sellers.pop(),
        currency=currencies.pop(),
        shipping_address=request.shipping_address.model_dump(),
        po_number=request.po_number,
        incoterms=request.incoterms,
        payment_terms=request.payment_terms,
        amount_refunded=0,
        snapshot_version=1,
        reservation_expires_at=(
            _now() + timedelta(minutes=settings.reservation_ttl_minutes) if reserved else None
        ),
    )
    snapshot.apply_to(order)
    session.add(order)
    await session.flush()

    for product, key, quantity, unit_price, line_subtotal in lines:
        session.add(
            OrderItem(
                order_id=order.id,
                product_id=product.id,
                variant_key=key,
                product_name=product.name,
                quantity=quantity,
                unit_price=unit_price,
                line_subtotal=line_subtotal,
                tracks_stock=inventory.is_stock_gated(product),
            )
        )
    await session.flush()

    if snapshot.requires_deposit:
        payment = await open_payment_intent(
            session, gateway, order, PURPOSE_DEPOSIT, snapshot.deposit_amount
        )
    else:
        payment = await open_payment_intent(session, gateway, order, PURPOSE_FULL, snapshot.total)

    logger.info(
        "Order created: id=%s channel=%s buyer=%s seller=%s total=%d deposit=%d items=%d",
        order.id, order.channel, buyer_id, order.seller_id,
        snapshot.total, snapshot.deposit_amount, len(lines),
    )
    return order, payment


async def open_payment_intent(
    session: AsyncSession,
    gateway,
    order: Order,
    purpose: str,
    amount: int,
    balance_request: Optional[BalanceRequest] = None,
) -> Payment:
    """Open a gateway intent and record it as a Payment against *order*."""
    attempt = (
        await session.execute(
            select(func.count())
            .select_from(Payment)
            .where(Payment.order_id == order.id, Payment.purpose == purpose)
        )
    ).scalar_one() + 1
    idempotency_key = f"{order.id}:{purpose}:{attempt}"

    intent = await gateway.create_intent(
        amount,
        order.currency,
        {
            "order_id": order.id,
            "purpose": purpose,
            "snapshot_version": str(order.snapshot_version),
        },
        idempotency_key,
    )

    payment = Payment(
        order_id=order.id,
        purpose=purpose,
        intent_id=intent.intent_id,
        client_secret=intent.client_secret,
        amount=amount,
        amount_refunded=0,
        currency=order.currency,
        status=INTENT_OPEN,
        snapshot_version=order.snapshot_version,
        idempotency_key=idempotency_key,
        balance_request_id=balance_request.id if balance_request else None,
    )
    session.add(payment)

    if purpose == PURPOSE_BALANCE:
        order.stripe_balance_payment_intent_id = intent.intent_id
    else:
        order.stripe_payment_intent_id = intent.intent_id
    await session.flush()

    logger.info(
        "Payment intent opened: order=%s purpose=%s intent=%s amount=%d version=%d",
        order.id, purpose, intent.intent_id, amount, order.snapshot_version,
    )
    return payment


# ── Payment confirmation ─────────────────────────────────────────────────────

async def confirm_payment(
    session: AsyncSession, intent_id: str, amount: int
) -> Tuple[Order, bool]:
    """
    Apply a captured payment to its order.

    Returns (order, applied). A second confirmation of the same intent is a
    no-op with ``applied=False``. Amount mismatches and intents issued
    against a superseded snapshot raise ConflictError and change nothing.
    """
    payment = await get_payment_by_intent(session, intent_id)
    order = await get_order(session, payment.order_id)

    if payment.status == INTENT_SUCCEEDED:
        logger.info("Payment already applied: intent=%s order=%s", intent_id, order.id)
        return order, False
    if payment.status == INTENT_CANCELLED:
        raise ConflictError(
            "Payment intent was invalidated before it was captured",
            code="stale_payment_intent",
        )
    if order.status == ORDER_CANCELLED:
        raise ConflictError("Order is cancelled", code="order_cancelled")

    snapshot = PricingSnapshot.from_order(order)

    if payment.purpose == PURPOSE_DEPOSIT:
        if snapshot.amount_paid != 0 or amount != snapshot.deposit_amount or amount != payment.amount:
            raise ConflictError(
                f"Deposit of {amount} does not match expected {snapshot.deposit_amount}",
                code="payment_mismatch",
            )
    else:
        if payment.snapshot_version != order.snapshot_version:
            raise ConflictError(
                "Payment intent was issued for an outdated price",
                code="stale_payment_intent",
            )
        if amount != snapshot.remaining_balance or amount != payment.amount:
            raise ConflictError(
                f"Payment of {amount} does not match remaining balance "
                f"{snapshot.remaining_balance}",
                code="payment_mismatch",
            )

    paid = snapshot.with_payment(amount)
    first_payment = snapshot.amount_paid == 0
    payment_status = derive_payment_status(
        paid.total, paid.deposit_amount, paid.amount_paid, order.amount_refunded
    )
    status = ORDER_PROCESSING if order.status == ORDER_PENDING else order.status

    claimed = await session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_((INTENT_OPEN, INTENT_FAILED)))
        .values(status=INTENT_SUCCEEDED, confirmed_at=_now())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        raise ConflictError("Payment is being confirmed concurrently", code="payment_in_flight")

    result = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status != ORDER_CANCELLED,
            Order.amount_paid == snapshot.amount_paid,
            Order.snapshot_version == order.snapshot_version,
        )
        .values(
            **paid.as_columns(),
            payment_status=payment_status,
            status=status,
            reservation_expires_at=None,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.execute(
            update(Payment)
            .where(Payment.id == payment.id)
            .values(status=payment.status, confirmed_at=None)
            .execution_options(synchronize_session=False)
        )
        raise ConflictError("Order changed while confirming payment", code="snapshot_changed")

    await session.refresh(order)
    await session.refresh(payment)

    if first_payment:
        for item in await get_order_items(session, order.id):
            if item.tracks_stock:
                await inventory.commit_reservation(
                    session, item.product_id, item.variant_key, item.quantity
                )

    if payment.balance_request_id:
        balance_request = await session.get(BalanceRequest, payment.balance_request_id)
        if balance_request is not None:
            balance_request.status = "paid"
            balance_request.consumed_at = _now()
    await session.flush()

    logger.info(
        "Payment applied: order=%s intent=%s purpose=%s amount=%d paid=%d remaining=%d status=%s",
        order.id, intent_id, payment.purpose, amount,
        order.amount_paid, order.remaining_balance, order.payment_status,
    )
    return order, True


async def mark_payment_status(session: AsyncSession, intent_id: str, status: str) -> Payment:
    """Record a failed or cancelled intent; succeeded payments are left alone."""
    payment = await get_payment_by_intent(session, intent_id)
    if payment.status in (INTENT_OPEN, INTENT_FAILED):
        payment.status = status
        await session.flush()
        logger.info(
            "Payment intent %s: order=%s intent=%s", status, payment.order_id, intent_id
        )
    return payment


async def sync_payment(
    session: AsyncSession, gateway, order_id: str, intent_id: str
) -> Order:
    """Poll the gateway for *intent_id* and apply it if it has succeeded."""
    order = await get_order(session, order_id)
    payment = await get_payment_by_intent(session, intent_id)
    if payment.order_id != order.id:
        raise NotFoundError(f"Payment intent {intent_id!r} not found", code="unknown_payment_intent")

    intent = await gateway.retrieve_intent(intent_id)
    if intent.status == "succeeded":
        order, _ = await confirm_payment(session, intent_id, intent.amount_received or intent.amount)
    elif intent.status == "canceled":
        await mark_payment_status(session, intent_id, INTENT_CANCELLED)
    else:
        logger.info(
            "Payment not yet captured: order=%s intent=%s gateway_status=%s",
            order.id, intent_id, intent.status,
        )
    return order


# ── Fulfillment ──────────────────────────────────────────────────────────────

async def update_item_status(
    session: AsyncSession,
    order_id: str,
    item_id: str,
    item_status: str,
    tracking_number: Optional[str] = None,
    carrier: Optional[str] = None,
) -> Tuple[Order, OrderItem, bool]:
    """
    Move one item along pending -> shipped -> delivered.

    Returns (order, item, changed). Re-sending the current status only
    updates tracking details.
    """
    order = await get_order(session, order_id)
    if order.status == ORDER_CANCELLED:
        raise ConflictError("Order is cancelled", code="order_cancelled")
    if order.payment_status not in FULFILLABLE_PAYMENT_STATUSES:
        raise ConflictError("Order has not been paid", code="order_not_paid")

    item = await session.get(OrderItem, item_id)
    if item is None or item.order_id != order.id:
        raise NotFoundError(f"Item {item_id!r} not found on order {order_id!r}")

    changed = item.item_status != item_status
    if changed and _NEXT_ITEM_STATUS.get(item.item_status) != item_status:
        raise ConflictError(
            f"Cannot move item from {item.item_status} to {item_status}",
            code="invalid_transition",
        )

    if tracking_number is not None:
        item.tracking_number = tracking_number
    if carrier is not None:
        item.carrier = carrier
    if changed:
        item.item_status = item_status
        if item_status == ITEM_SHIPPED:
            item.shipped_at = _now()
        elif item_status == ITEM_DELIVERED:
            item.delivered_at = _now()
    await session.flush()

    statuses = [i.item_status for i in await get_order_items(session, order.id)]
    order.fulfillment_status = derive_fulfillment_status(statuses)
    order.status = derive_order_status(order.status, order.payment_status, statuses)
    await session.flush()

    if changed:
        logger.info(
            "Item %s: order=%s item=%s tracking=%s order_status=%s fulfillment=%s",
            item_status, order.id, item.id, item.tracking_number,
            order.status, order.fulfillment_status,
        )
    return order, item, changed


# ── Refund & cancellation effects ────────────────────────────────────────────

async def _return_stock(session: AsyncSession, order: Order, items: List[OrderItem]) -> None:
    # Reservations become sold on the first captured payment.
    committed = order.amount_paid > 0
    for item in items:
        if not item.tracks_stock or item.item_status != ITEM_PENDING:
            continue
        if committed:
            await inventory.restock_sold(session, item.product_id, item.variant_key, item.quantity)
        else:
            await inventory.release_reservation(
                session, item.product_id, item.variant_key, item.quantity
            )


async def record_refund(session: AsyncSession, order: Order) -> Order:
    """Re-derive payment status after ``amount_refunded`` moved."""
    await session.refresh(order)
    order.payment_status = derive_payment_status(
        order.total, order.deposit_amount, order.amount_paid, order.amount_refunded
    )

    items = await get_order_items(session, order.id)
    nothing_shipped = all(i.item_status == ITEM_PENDING for i in items)
    if (
        order.status != ORDER_CANCELLED
        and nothing_shipped
        and order.amount_paid > 0
        and order.amount_refunded >= order.amount_paid
    ):
        await _return_stock(session, order, items)
        order.status = ORDER_CANCELLED
        logger.info("Order cancelled by full refund: order=%s", order.id)

    await session.flush()
    return order


async def mark_cancelled(session: AsyncSession, order: Order) -> Order:
    """Cancel an order whose items have not shipped and return its stock."""
    if order.status == ORDER_CANCELLED:
        return order

    items = await get_order_items(session, order.id)
    if order.status not in (ORDER_PENDING, ORDER_PROCESSING) or any(
        i.item_status != ITEM_PENDING for i in items
    ):
        raise ConflictError("Shipped orders cannot be cancelled", code="order_shipped")

    await _return_stock(session, order, items)
    order.status = ORDER_CANCELLED
    order.payment_status = derive_payment_status(
        order.total, order.deposit_amount, order.amount_paid, order.amount_refunded
    )
    await session.flush()
    logger.info("Order cancelled: order=%s paid=%d", order.id, order.amount_paid)
    return order


async def void_open_intents(session: AsyncSession, gateway, order: Order) -> int:
    """
    Cancel every uncaptured intent of *order* at the gateway.

    Raises ConflictError ``payment_in_flight`` when the gateway reports one of
    them as already captured; the caller must not cancel the order then.
    """
    voided = 0
    for payment in await list_payments(session, order.id):
        if payment.status not in (INTENT_OPEN, INTENT_FAILED):
            continue
        try:
            await gateway.cancel_intent(payment.intent_id, f"cancel:{payment.intent_id}")
        except GatewayError:
            intent = await gateway.retrieve_intent(payment.intent_id)
            if intent.status == "succeeded":
                raise ConflictError(
                    "A payment for this order is being processed", code="payment_in_flight"
                )
            if intent.status != "canceled":
                raise
        payment.status = INTENT_CANCELLED
        voided += 1
    await session.flush()
    return voided


async def release_expired_reservations(
    session: AsyncSession, gateway, now: Optional[datetime] = None
) -> List[str]:
    """
    Cancel unpaid pending orders whose reservation deadline has passed and
    return their stock. Orders with a capture already in flight are left for
    the payment confirmation. Returns the ids of the cancelled orders.
    """
    now = now or _now()
    expired = (
        await session.execute(
            select(Order)
            .where(
                Order.status == ORDER_PENDING,
                Order.amount_paid == 0,
                Order.reservation_expires_at.is_not(None),
                Order.reservation_expires_at <= now,
            )
            .order_by(Order.reservation_expires_at)
        )
    ).scalars().all()

    released: List[str] = []
    for order in expired:
        try:
            await void_open_intents(session, gateway, order)
        except ConflictError:
            logger.info("Reservation kept, payment in flight: order=%s", order.id)
            continue

        claimed = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == ORDER_PENDING, Order.amount_paid == 0)
            .values(reservation_expires_at=None, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            continue
        await session.refresh(order)
        await mark_cancelled(session, order)
        released.append(order.id)
        logger.info("Reservation expired, order cancelled: order=%s", order.id)

    return released
