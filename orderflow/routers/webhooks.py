"""
Payment gateway webhook receiver.

POST /webhooks/stripe
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database import get_db
from orderflow.deps import verify_stripe_webhook
from orderflow.services import events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_event(
    body: bytes = Depends(verify_stripe_webhook),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Apply one gateway event. Idempotent: re-delivering the same event id is a
    no-op. Rejected events are acknowledged so the gateway stops retrying.
    """
    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed event body",
        )

    outcome = await events.handle_event(db, event)
    logger.info("Gateway event %s: id=%s type=%s", outcome, event.get("id"), event.get("type"))
    return {"received": True, "outcome": outcome}
