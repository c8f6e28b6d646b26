"""
Shared pytest fixtures – in-memory SQLite for unit tests (no real Postgres or
Stripe needed).
"""
from __future__ import annotations

import base64
import json
import os
from dataclasses import replace
from typing import AsyncGenerator, Dict, List, Tuple

# Settings are read once at import time; configure before importing orderflow.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_orderflow")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_orderflow")
os.environ.setdefault("SESSION_SECRET_KEY", "test-session-secret")
os.environ.setdefault("BALANCE_SESSION_SECRET", "test-balance-secret")
os.environ.setdefault("SHIPPING_RATES_JSON", '{"US": 1000, "GB": 2500, "default": 1500}')
os.environ.setdefault("GATEWAY_RETRY_BASE_SECONDS", "0")

import itsdangerous
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orderflow.config import get_settings
from orderflow.errors import GatewayError
from orderflow.models import Base, Product, StockRecord
from orderflow.schemas import Address, CheckoutItem, CheckoutRequest
from orderflow.services.stripe_client import GatewayRefund, Intent

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

SELLER = "seller-1"
BUYER = "buyer-1"
US_ADDRESS = {
    "name": "Ada Buyer",
    "line1": "1 Main St",
    "city": "Springfield",
    "postal_code": "12345",
    "country": "US",
}
GB_ADDRESS = {
    "name": "Ada Buyer",
    "line1": "10 High Street",
    "city": "London",
    "postal_code": "N1 1AA",
    "country": "gb",
}


# ── Fake payment gateway ─────────────────────────────────────────────────────

class FakeGateway:
    """In-process stand-in for StripeGateway with the same coroutine API."""

    def __init__(self) -> None:
        self.intents: Dict[str, Intent] = {}
        self.by_key: Dict[str, str] = {}
        self.refunds: List[Tuple[str, int, str]] = []
        self.cancelled: List[str] = []
        self.fail_refunds = False
        # Refund calls allowed to succeed before the rest fail
        self.refunds_before_failure: int | None = None
        self.refund_status = "succeeded"
        self._seq = 0

    async def create_intent(self, amount, currency, metadata, idempotency_key) -> Intent:
        if idempotency_key in self.by_key:
            return self.intents[self.by_key[idempotency_key]]
        self._seq += 1
        intent = Intent(
            intent_id=f"pi_{self._seq}",
            client_secret=f"pi_{self._seq}_secret_x",
            status="requires_payment_method",
            amount=amount,
            amount_received=0,
            currency=currency.upper(),
            metadata=dict(metadata),
        )
        self.intents[intent.intent_id] = intent
        self.by_key[idempotency_key] = intent.intent_id
        return intent

    async def retrieve_intent(self, intent_id) -> Intent:
        return self.intents[intent_id]

    async def cancel_intent(self, intent_id, idempotency_key) -> Intent:
        intent = self.intents[intent_id]
        if intent.status == "succeeded":
            raise GatewayError("intent already succeeded", retryable=False,
                               gateway_code="payment_intent_unexpected_state")
        intent = replace(intent, status="canceled")
        self.intents[intent_id] = intent
        self.cancelled.append(intent_id)
        return intent

    async def refund(self, intent_id, amount, idempotency_key, metadata=None) -> GatewayRefund:
        if self.fail_refunds or (
            self.refunds_before_failure is not None
            and len(self.refunds) >= self.refunds_before_failure
        ):
            raise GatewayError("Payment processor unavailable", retryable=True)
        self._seq += 1
        self.refunds.append((intent_id, amount, idempotency_key))
        return GatewayRefund(refund_id=f"re_{self._seq}", status=self.refund_status, amount=amount)

    def succeed(self, intent_id: str) -> Intent:
        intent = self.intents[intent_id]
        intent = replace(intent, status="succeeded", amount_received=intent.amount)
        self.intents[intent_id] = intent
        return intent


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(scope="function")
async def db_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(TEST_DB_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_factory) -> AsyncGenerator[AsyncSession, None]:
    async with db_factory() as session:
        yield session
        await session.rollback()


# ── Seed helpers ─────────────────────────────────────────────────────────────

async def add_product(
    session: AsyncSession,
    product_id: str,
    *,
    unit_price: int = 10000,
    fulfillment_type: str = "in_stock",
    variant_schema: str = "none",
    deposit_amount: int | None = None,
    wholesale_unit_price: int | None = None,
    seller_id: str = SELLER,
    stock: Dict[str, int] | None = None,
) -> Product:
    product = Product(
        id=product_id,
        seller_id=seller_id,
        name=product_id.replace("-", " ").title(),
        currency="USD",
        unit_price=unit_price,
        wholesale_unit_price=wholesale_unit_price,
        deposit_amount=deposit_amount,
        fulfillment_type=fulfillment_type,
        variant_schema=variant_schema,
    )
    session.add(product)
    for key, total in (stock or {}).items():
        session.add(StockRecord(product_id=product_id, variant_key=key, total_stock=total))
    await session.commit()
    return product


def checkout_request(
    *items: Dict,
    address: Dict | None = None,
    shipping_cost: int = 0,
    tax_amount: int = 0,
    channel: str = "retail",
    **extra,
) -> CheckoutRequest:
    return CheckoutRequest(
        channel=channel,
        items=[CheckoutItem(**i) for i in items],
        shipping_address=Address(**(address or US_ADDRESS)),
        shipping_cost=shipping_cost,
        tax_amount=tax_amount,
        **extra,
    )


# ── Identity cookie ──────────────────────────────────────────────────────────

def auth_headers(subject_id: str, role: str) -> Dict[str, str]:
    """Forge the signed session cookie the identity provider would set."""
    settings = get_settings()
    signer = itsdangerous.TimestampSigner(str(settings.session_secret_key))
    data = base64.b64encode(json.dumps({"subject_id": subject_id, "role": role}).encode("utf-8"))
    return {"Cookie": f"{settings.session_cookie}={signer.sign(data).decode('utf-8')}"}
