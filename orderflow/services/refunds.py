"""
Refund processing against the payment gateway.

The refundable ceiling (``amount_paid - amount_refunded``) is claimed with a
single conditional UPDATE before any money moves, so concurrent refund
requests for one order can never jointly exceed what was captured.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.errors import ConflictError, GatewayError, ValidationError
from orderflow.models import Order, Payment, Refund
from orderflow.services import documents, lifecycle
from orderflow.services.pricing import ITEM_PENDING, ORDER_CANCELLED

logger = logging.getLogger(__name__)

REFUND_FULL = "full"
REFUND_PARTIAL = "partial"
REFUND_TYPES = (REFUND_FULL, REFUND_PARTIAL)

REFUND_PENDING = "pending"
REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"


@dataclass
class RefundResult:
    refund: Refund
    refunds: List[Refund]
    refund_amount: int
    stripe_refund_id: Optional[str]
    status: str
    order: Order


def _now() -> datetime:
    return datetime.now(timezone.utc)


def compute_refund_amount(
    order: Order,
    refund_type: str,
    custom_amount: Optional[int] = None,
    *,
    unshipped_value: int = 0,
) -> int:
    """
    Amount to refund for *refund_type*; never more than what is still
    refundable (``amount_paid - amount_refunded``).
    """
    if refund_type not in REFUND_TYPES:
        raise ValidationError(f"Unknown refund type {refund_type!r}")

    refundable = max(order.amount_paid - order.amount_refunded, 0)

    if refund_type == REFUND_FULL:
        amount = refundable
    elif custom_amount is not None:
        if custom_amount <= 0:
            raise ValidationError("Refund amount must be positive", code="invalid_refund_amount")
        if custom_amount > refundable:
            raise ConflictError(
                f"Refund of {custom_amount} exceeds the refundable {refundable}",
                code="refund_exceeds_captured",
            )
        amount = custom_amount
    else:
        amount = min(unshipped_value, refundable)

    if amount <= 0:
        raise ConflictError("Nothing left to refund on this order", code="nothing_to_refund")
    return amount


def _allocate(payments: List[Payment], amount: int) -> List[Tuple[Payment, int]]:
    """Spread *amount* over captured payments, most recent first."""
    legs = []
    remaining = amount
    for payment in reversed(payments):
        available = payment.amount - payment.amount_refunded
        if available <= 0:
            continue
        take = min(available, remaining)
        legs.append((payment, take))
        remaining -= take
        if remaining == 0:
            break
    if remaining:
        raise ConflictError(
            "Captured payments do not cover the refund", code="refund_exceeds_captured"
        )
    return legs


async def _release_ceiling(session: AsyncSession, order_id: str, amount: int) -> None:
    await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.amount_refunded >= amount)
        .values(amount_refunded=Order.amount_refunded - amount, updated_at=_now())
        .execution_options(synchronize_session=False)
    )


async def process_refund(
    session: AsyncSession,
    gateway,
    order_id: str,
    refund_type: str,
    reason: Optional[str],
    custom_amount: Optional[int],
    processed_by: str,
) -> RefundResult:
    order = await lifecycle.get_order(session, order_id)
    items = await lifecycle.get_order_items(session, order.id)
    unshipped = sum(i.line_subtotal for i in items if i.item_status == ITEM_PENDING)
    amount = compute_refund_amount(order, refund_type, custom_amount, unshipped_value=unshipped)

    claimed = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.amount_refunded + amount <= Order.amount_paid)
        .values(amount_refunded=Order.amount_refunded + amount, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        logger.warning("Refund ceiling refused: order=%s amount=%d", order.id, amount)
        raise ConflictError(
            "Refund exceeds the amount captured for this order", code="refund_exceeds_captured"
        )
    await session.refresh(order)

    captured = await lifecycle.list_payments(session, order.id, lifecycle.INTENT_SUCCEEDED)
    legs = _allocate(captured, amount)

    done: List[Refund] = []
    for index, (payment, leg_amount) in enumerate(legs):
        refund = Refund(
            order_id=order.id,
            payment_id=payment.id,
            refund_type=refund_type,
            amount=leg_amount,
            currency=order.currency,
            reason=reason,
            status=REFUND_PENDING,
            processed_by=processed_by,
        )
        session.add(refund)
        await session.flush()

        try:
            result = await gateway.refund(
                payment.intent_id,
                leg_amount,
                f"refund:{refund.id}",
                {"order_id": order.id, "refund_id": refund.id},
            )
        except GatewayError as exc:
            unprocessed = sum(a for _, a in legs[index:])
            refund.status = REFUND_FAILED
            await _release_ceiling(session, order.id, unprocessed)
            if done:
                await lifecycle.record_refund(session, order)
            # Keep the failed attempt and any legs already refunded
            await session.commit()
            logger.error(
                "Refund failed at gateway: order=%s refund=%s amount=%d unprocessed=%d",
                order.id, refund.id, leg_amount, unprocessed,
            )
            if done:
                raise GatewayError(
                    f"Refund partially applied: {amount - unprocessed} of {amount} refunded, "
                    f"{unprocessed} failed at the payment processor",
                    code="refund_partially_applied",
                    retryable=exc.retryable,
                    gateway_code=exc.gateway_code,
                ) from exc
            raise

        refund.stripe_refund_id = result.refund_id
        refund.status = REFUND_SUCCEEDED if result.status == REFUND_SUCCEEDED else REFUND_PENDING
        payment.amount_refunded += leg_amount
        await session.flush()
        await documents.generate_credit_note(session, order, refund)
        done.append(refund)

        logger.info(
            "Refund issued: order=%s refund=%s intent=%s amount=%d gateway_status=%s",
            order.id, refund.id, payment.intent_id, leg_amount, result.status,
        )

    order = await lifecycle.record_refund(session, order)
    status = (
        REFUND_SUCCEEDED if all(r.status == REFUND_SUCCEEDED for r in done) else REFUND_PENDING
    )
    return RefundResult(
        refund=done[0],
        refunds=done,
        refund_amount=amount,
        stripe_refund_id=done[0].stripe_refund_id,
        status=status,
        order=order,
    )


async def cancel_order(
    session: AsyncSession,
    gateway,
    order_id: str,
    reason: Optional[str],
    processed_by: str,
) -> Order:
    """Cancel an unshipped order: void open intents, refund what was captured."""
    order = await lifecycle.get_order(session, order_id)
    if order.status == ORDER_CANCELLED:
        return order

    items = await lifecycle.get_order_items(session, order.id)
    if any(i.item_status != ITEM_PENDING for i in items):
        raise ConflictError("Shipped orders cannot be cancelled", code="order_shipped")

    await lifecycle.void_open_intents(session, gateway, order)

    if order.amount_paid - order.amount_refunded > 0:
        await process_refund(
            session, gateway, order.id, REFUND_FULL,
            reason or "order cancelled", None, processed_by,
        )
        order = await lifecycle.get_order(session, order.id)

    order = await lifecycle.mark_cancelled(session, order)
    logger.info("Order cancel processed: order=%s by=%s reason=%s", order.id, processed_by, reason)
    return order


async def reconcile_refund(
    session: AsyncSession, stripe_refund_id: str, status: str
) -> Optional[Refund]:
    """Apply an asynchronous refund outcome reported by the gateway."""
    refund = (
        await session.execute(select(Refund).where(Refund.stripe_refund_id == stripe_refund_id))
    ).scalar_one_or_none()
    if refund is None:
        logger.warning("Refund update for unknown refund id=%s", stripe_refund_id)
        return None

    if refund.status == REFUND_FAILED or refund.status == status:
        return refund

    if status == REFUND_SUCCEEDED:
        refund.status = REFUND_SUCCEEDED
        await session.flush()
        logger.info("Refund settled: order=%s refund=%s", refund.order_id, refund.id)
    elif status in (REFUND_FAILED, "canceled"):
        refund.status = REFUND_FAILED
        await _release_ceiling(session, refund.order_id, refund.amount)
        if refund.payment_id:
            payment = await session.get(Payment, refund.payment_id)
            if payment is not None:
                payment.amount_refunded = max(payment.amount_refunded - refund.amount, 0)
        await documents.void_credit_note(session, refund)
        order = await lifecycle.get_order(session, refund.order_id)
        await lifecycle.record_refund(session, order)
        logger.warning(
            "Refund failed after acceptance: order=%s refund=%s amount=%d",
            refund.order_id, refund.id, refund.amount,
        )
    return refund


async def list_refunds(session: AsyncSession, order_id: str) -> List[Refund]:
    return list(
        (
            await session.execute(
                select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at)
            )
        ).scalars().all()
    )
