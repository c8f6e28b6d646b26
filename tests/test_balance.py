"""
Balance payment sessions: magic-link resolution, expiry, address change.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from conftest import BUYER, GB_ADDRESS, SELLER, add_product, checkout_request
from orderflow.auth import Identity
from orderflow.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
)
from orderflow.models import AddressChange, BalanceRequest, Payment
from orderflow.schemas import Address
from orderflow.services import balance, lifecycle
from orderflow.services.pricing import RateTableQuoter

QUOTER = RateTableQuoter({"US": 1000, "GB": 2500, "default": 1500})


@pytest_asyncio.fixture(autouse=True)
async def seed(db_session):
    await add_product(
        db_session, "jacket", unit_price=10000, fulfillment_type="pre_order",
        deposit_amount=3000,
    )
    await add_product(db_session, "mug", unit_price=1200, stock={"": 5})


@pytest_asyncio.fixture
async def deposit_order(db_session, gateway):
    """Pre-order with US shipping (1000) and its 3000 deposit captured."""
    order, payment = await lifecycle.create_order(
        db_session, gateway, BUYER,
        checkout_request({"product_id": "jacket", "quantity": 1}, shipping_cost=1000),
    )
    await lifecycle.confirm_payment(db_session, payment.intent_id, 3000)
    await db_session.commit()
    return order


@pytest.mark.asyncio
async def test_request_and_open_session_by_token(db_session, deposit_order):
    req, token = await balance.request_balance(db_session, deposit_order.id, SELLER)
    await db_session.commit()

    assert req.token_hash != token
    assert len(token) == 64

    view = await balance.open_session(db_session, deposit_order.id, token, None)
    assert view.remaining_balance == 8000
    assert view.total == 11000
    assert view.can_change_address is True
    assert view.expires_at > datetime.now(timezone.utc) + timedelta(days=6)


@pytest.mark.asyncio
async def test_owner_can_open_without_token(db_session, deposit_order):
    await balance.request_balance(db_session, deposit_order.id, SELLER)
    await db_session.commit()

    view = await balance.open_session(
        db_session, deposit_order.id, None, Identity(subject_id=BUYER, role="buyer")
    )
    assert view.remaining_balance == 8000

    with pytest.raises(ForbiddenError):
        await balance.open_session(
            db_session, deposit_order.id, None, Identity(subject_id="intruder", role="buyer")
        )


@pytest.mark.asyncio
async def test_valid_token_opens_session_for_any_signed_in_caller(db_session, deposit_order):
    """The link is a bearer capability; the holder's own sign-in does not matter."""
    _, token = await balance.request_balance(db_session, deposit_order.id, SELLER)
    await db_session.commit()

    view = await balance.open_session(
        db_session, deposit_order.id, token, Identity(subject_id="buyer-2", role="buyer")
    )
    assert view.remaining_balance == 8000

    view = await balance.open_session(
        db_session, deposit_order.id, token, Identity(subject_id="seller-9", role="seller")
    )
    assert view.remaining_balance == 8000


@pytest.mark.asyncio
async def test_unknown_token(db_session, deposit_order):
    await balance.request_balance(db_session, deposit_order.id, SELLER)
    await db_session.commit()

    with pytest.raises(NotFoundError):
        await balance.open_session(db_session, deposit_order.id, "0" * 64, None)


@pytest.mark.asyncio
async def test_expired_session_is_a_distinct_error(db_session, deposit_order):
    req, token = await balance.request_balance(db_session, deposit_order.id, SELLER)
    await db_session.execute(
        update(BalanceRequest)
        .where(BalanceRequest.id == req.id)
        .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    await db_session.commit()

    with pytest.raises(SessionExpiredError) as exc:
        await balance.open_session(db_session, deposit_order.id, token, None)
    assert exc.value.status_code == 410


@pytest.mark.asyncio
async def test_newer_request_supersedes_older(db_session, deposit_order):
    _, old_token = await balance.request_balance(db_session, deposit_order.id, SELLER)
    _, new_token = await balance.request_balance(db_session, deposit_order.id, SELLER)
    await db_session.commit()

    with pytest.raises(SessionExpiredError):
        await balance.open_session(db_session, deposit_order.id, old_token, None)
    view = await balance.open_session(db_session, deposit_order.id, new_token, None)
    assert view.remaining_balance == 8000


@pytest.mark.asyncio
async def test_orders_without_deposit_cannot_request_balance(db_session, gateway):
    order, payment = await lifecycle.create_order(
        db_session, gateway, BUYER, checkout_request({"product_id": "mug", "quantity": 1})
    )
    await lifecycle.confirm_payment(db_session, payment.intent_id, 1200)
    await db_session.commit()

    with pytest.raises(ConflictError) as exc:
        await balance.request_balance(db_session, order.id, SELLER)
    assert exc.value.code == "no_deposit"


@pytest.mark.asyncio
async def test_settled_balance(db_session, gateway, deposit_order):
    req, token = await balance.request_balance(db_session, deposit_order.id, SELLER)
    payment = await balance.pay_balance(db_session, gateway, req)
    await lifecycle.confirm_payment(db_session, payment.intent_id, 8000)
    await db_session.commit()

    with pytest.raises(ConflictError) as exc:
        await balance.open_session(db_session, deposit_order.id, token, None)
    assert exc.value.code == "balance_already_settled"


@pytest.mark.asyncio
async def test_pay_balance_reuses_open_intent(db_session, gateway, deposit_order):
    req, _ = await balance.request_balance(db_session, deposit_order.id, SELLER)
    first = await balance.pay_balance(db_session, gateway, req)
    second = await balance.pay_balance(db_session, gateway, req)
    await db_session.commit()

    assert first.intent_id == second.intent_id
    assert first.amount == 8000


@pytest.mark.asyncio
async def test_address_change_recomputes_and_invalidates_old_intent(
    db_session, gateway, deposit_order
):
    req, _ = await balance.request_balance(db_session, deposit_order.id, SELLER)
    old = await balance.pay_balance(db_session, gateway, req)
    await db_session.commit()

    new_address = Address(**GB_ADDRESS).model_dump()
    order = await balance.change_address(db_session, gateway, QUOTER, req, new_address)
    await db_session.commit()

    assert order.shipping_cost == 2500
    assert order.total == 12500
    assert order.remaining_balance == 9500
    assert order.amount_paid == 3000
    assert order.snapshot_version == 2
    assert order.shipping_address["country"] == "GB"

    assert old.intent_id in gateway.cancelled
    stale = (
        await db_session.execute(select(Payment).where(Payment.intent_id == old.intent_id))
    ).scalar_one()
    assert stale.status == "cancelled"

    audit = (await db_session.execute(select(AddressChange))).scalars().all()
    assert len(audit) == 1
    assert (audit[0].previous_shipping_cost, audit[0].new_shipping_cost) == (1000, 2500)

    # The old intent can no longer settle the order, even if it is captured
    with pytest.raises(ConflictError) as exc:
        await lifecycle.confirm_payment(db_session, old.intent_id, 8000)
    assert exc.value.code == "stale_payment_intent"

    fresh = await balance.pay_balance(db_session, gateway, req)
    await db_session.commit()
    assert fresh.intent_id != old.intent_id
    assert fresh.amount == 9500
    assert fresh.snapshot_version == 2


@pytest.mark.asyncio
async def test_address_change_blocked_when_payment_already_captured(
    db_session, gateway, deposit_order
):
    order_id = deposit_order.id
    req, _ = await balance.request_balance(db_session, deposit_order.id, SELLER)
    old = await balance.pay_balance(db_session, gateway, req)
    await db_session.commit()
    gateway.succeed(old.intent_id)

    with pytest.raises(ConflictError) as exc:
        await balance.change_address(
            db_session, gateway, QUOTER, req, Address(**GB_ADDRESS).model_dump()
        )
    assert exc.value.code == "payment_in_flight"
    await db_session.rollback()

    order = await lifecycle.get_order(db_session, order_id)
    assert order.snapshot_version == 1
    assert order.shipping_cost == 1000


@pytest.mark.asyncio
async def test_address_locked(db_session, gateway, deposit_order):
    req, _ = await balance.request_balance(
        db_session, deposit_order.id, SELLER, can_change_address=False
    )
    await db_session.commit()

    with pytest.raises(ConflictError) as exc:
        await balance.change_address(
            db_session, gateway, QUOTER, req, Address(**GB_ADDRESS).model_dump()
        )
    assert exc.value.code == "address_locked"
