"""
Gateway event intake: de-duplication by event id and dispatch to the
lifecycle and refund services.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.errors import ConflictError, NotFoundError
from orderflow.models import WebhookEvent
from orderflow.services import lifecycle, refunds

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_REJECTED = "rejected"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate"


async def handle_event(session: AsyncSession, event: Dict[str, Any]) -> str:
    """
    Process one verified gateway event exactly once.

    Returns the outcome. Duplicates are a no-op. Business rejections
    (amount mismatch, stale intent) are recorded and not raised so the
    gateway stops retrying; anything unexpected propagates and the
    caller's transaction rolls back, leaving the event unrecorded.
    """
    event_id = event.get("id")
    event_type = event.get("type", "")
    if not event_id:
        raise ConflictError("Event has no id", code="malformed_event")

    if await session.get(WebhookEvent, event_id) is not None:
        logger.warning("Duplicate gateway event skipped: id=%s type=%s", event_id, event_type)
        return OUTCOME_DUPLICATE

    record = WebhookEvent(event_id=event_id, event_type=event_type, outcome=OUTCOME_APPLIED)
    session.add(record)
    try:
        await session.flush()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        await session.rollback()
        logger.warning("Duplicate gateway event skipped: id=%s type=%s", event_id, event_type)
        return OUTCOME_DUPLICATE

    obj = (event.get("data") or {}).get("object") or {}

    try:
        outcome, order_id = await _dispatch(session, event_type, obj)
    except (ConflictError, NotFoundError) as exc:
        outcome, order_id = OUTCOME_REJECTED, (obj.get("metadata") or {}).get("order_id")
        record.detail = f"{exc.code}: {exc.message}"
        logger.warning(
            "Gateway event rejected: id=%s type=%s code=%s detail=%s",
            event_id, event_type, exc.code, exc.message,
        )

    record.outcome = outcome
    record.order_id = order_id
    await session.flush()
    return outcome


async def _dispatch(
    session: AsyncSession, event_type: str, obj: Dict[str, Any]
) -> "tuple[str, Optional[str]]":
    if event_type == "payment_intent.succeeded":
        amount = int(obj.get("amount_received") or obj.get("amount") or 0)
        order, applied = await lifecycle.confirm_payment(session, obj["id"], amount)
        return (OUTCOME_APPLIED if applied else OUTCOME_IGNORED), order.id

    if event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        status = (
            lifecycle.INTENT_FAILED
            if event_type.endswith("payment_failed")
            else lifecycle.INTENT_CANCELLED
        )
        payment = await lifecycle.mark_payment_status(session, obj["id"], status)
        return OUTCOME_APPLIED, payment.order_id

    if event_type in ("refund.updated", "charge.refund.updated", "refund.failed"):
        refund = await refunds.reconcile_refund(session, obj["id"], obj.get("status", ""))
        if refund is None:
            return OUTCOME_IGNORED, None
        return OUTCOME_APPLIED, refund.order_id

    logger.info("Gateway event type ignored: %s", event_type)
    return OUTCOME_IGNORED, None
