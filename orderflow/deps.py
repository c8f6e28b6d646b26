"""
FastAPI dependency utilities: gateway signature verification, payment
gateway and shipping quoter, caller identity.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from orderflow.auth import Identity, get_session_identity
from orderflow.config import get_settings
from orderflow.errors import ForbiddenError
from orderflow.services.pricing import RateTableQuoter
from orderflow.services.stripe_client import StripeGateway, verify_signature

logger = logging.getLogger(__name__)
settings = get_settings()


async def verify_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
) -> bytes:
    """
    Verify the ``Stripe-Signature`` header against the webhook secret.
    Returns the raw request body so routers don't need to re-read it.
    """
    body = await request.body()

    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Stripe-Signature header",
        )

    if not verify_signature(
        body,
        stripe_signature,
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    ):
        logger.warning("Rejected gateway webhook with bad signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook signature mismatch",
        )

    return body


@lru_cache(maxsize=1)
def get_gateway() -> StripeGateway:
    return StripeGateway.from_settings(settings)


def get_quoter() -> RateTableQuoter:
    return RateTableQuoter(settings.shipping_rates)


async def get_identity(request: Request) -> Optional[Identity]:
    """Signed-in caller, or None for anonymous (magic-link) access."""
    return get_session_identity(request)


async def require_identity(request: Request) -> Identity:
    identity = get_session_identity(request)
    if identity is None:
        raise ForbiddenError("Sign in required")
    return identity
