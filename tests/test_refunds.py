"""
Refund processor: amount rules, ceiling, gateway legs, cancellation.
"""
from __future__ import annotations

from types import SimpleNamespace

import pytest
import pytest_asyncio

from conftest import BUYER, SELLER, add_product, checkout_request
from orderflow.errors import ConflictError, GatewayError, ValidationError
from orderflow.services import balance, documents, lifecycle, refunds
from orderflow.services.inventory import check_availability


# ── Pure amount rules ────────────────────────────────────────────────────────

def _order(paid, refunded=0):
    return SimpleNamespace(amount_paid=paid, amount_refunded=refunded)


def test_full_refund_is_everything_still_refundable():
    assert refunds.compute_refund_amount(_order(3000), "full") == 3000
    assert refunds.compute_refund_amount(_order(10000, 2500), "full") == 7500


def test_custom_amount_bounds():
    assert refunds.compute_refund_amount(_order(10000), "partial", 2500) == 2500

    with pytest.raises(ValidationError):
        refunds.compute_refund_amount(_order(10000), "partial", 0)
    with pytest.raises(ValidationError):
        refunds.compute_refund_amount(_order(10000), "partial", -5)
    with pytest.raises(ConflictError) as exc:
        refunds.compute_refund_amount(_order(10000, 9000), "partial", 1001)
    assert exc.value.code == "refund_exceeds_captured"


def test_partial_without_amount_refunds_unshipped_value():
    assert refunds.compute_refund_amount(_order(10000), "partial", unshipped_value=4000) == 4000
    assert refunds.compute_refund_amount(_order(3000), "partial", unshipped_value=4000) == 3000


def test_nothing_to_refund():
    with pytest.raises(ConflictError) as exc:
        refunds.compute_refund_amount(_order(3000, 3000), "full")
    assert exc.value.code == "nothing_to_refund"


def test_unknown_refund_type():
    with pytest.raises(ValidationError):
        refunds.compute_refund_amount(_order(3000), "store_credit")


# ── Processing ───────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def seed(db_session):
    await add_product(
        db_session, "jacket", unit_price=10000, fulfillment_type="pre_order",
        deposit_amount=3000,
    )
    await add_product(db_session, "mug", unit_price=1000, stock={"": 5})


async def _deposit_order(db_session, gateway):
    order, payment = await lifecycle.create_order(
        db_session, gateway, BUYER, checkout_request({"product_id": "jacket", "quantity": 1})
    )
    await lifecycle.confirm_payment(db_session, payment.intent_id, 3000)
    await db_session.commit()
    return order, payment


@pytest.mark.asyncio
async def test_deposit_only_full_refund(db_session, gateway):
    order, deposit = await _deposit_order(db_session, gateway)

    result = await refunds.process_refund(
        db_session, gateway, order.id, "full", "changed mind", None, SELLER
    )
    await db_session.commit()

    assert result.refund_amount == 3000
    assert result.status == "succeeded"
    assert gateway.refunds == [(deposit.intent_id, 3000, f"refund:{result.refund.id}")]
    assert result.order.amount_refunded == 3000
    assert result.order.payment_status == "refunded"
    assert result.order.status == "cancelled"

    notes = [d for d in await documents.list_documents(db_session, order.id)
             if d.document_type == "credit_note"]
    assert len(notes) == 1
    assert notes[0].total_amount == 3000


@pytest.mark.asyncio
async def test_over_ceiling_refund_makes_no_gateway_call(db_session, gateway):
    order, _ = await _deposit_order(db_session, gateway)

    with pytest.raises(ConflictError) as exc:
        await refunds.process_refund(db_session, gateway, order.id, "partial", None, 3001, SELLER)
    assert exc.value.code == "refund_exceeds_captured"
    assert gateway.refunds == []

    order = await lifecycle.get_order(db_session, order.id)
    assert order.amount_refunded == 0


@pytest.mark.asyncio
async def test_refunds_never_exceed_amount_paid(db_session, gateway):
    order, _ = await _deposit_order(db_session, gateway)

    await refunds.process_refund(db_session, gateway, order.id, "partial", None, 2000, SELLER)
    await db_session.commit()
    with pytest.raises(ConflictError):
        await refunds.process_refund(db_session, gateway, order.id, "partial", None, 1001, SELLER)

    result = await refunds.process_refund(
        db_session, gateway, order.id, "partial", None, 1000, SELLER
    )
    await db_session.commit()
    assert result.order.amount_refunded == 3000
    assert result.order.amount_refunded <= result.order.amount_paid


@pytest.mark.asyncio
async def test_refund_spans_deposit_and_balance_latest_first(db_session, gateway):
    order, deposit = await _deposit_order(db_session, gateway)
    req, _ = await balance.request_balance(db_session, order.id, SELLER)
    balance_payment = await balance.pay_balance(db_session, gateway, req)
    await lifecycle.confirm_payment(db_session, balance_payment.intent_id, 7000)
    await db_session.commit()

    result = await refunds.process_refund(
        db_session, gateway, order.id, "partial", None, 8000, SELLER
    )
    await db_session.commit()

    assert [(i, a) for i, a, _ in gateway.refunds] == [
        (balance_payment.intent_id, 7000),
        (deposit.intent_id, 1000),
    ]
    assert len(result.refunds) == 2
    assert result.order.payment_status == "partially_refunded"
    assert result.order.status == "processing"


@pytest.mark.asyncio
async def test_gateway_failure_leaves_order_untouched(db_session, gateway):
    order, _ = await _deposit_order(db_session, gateway)
    gateway.fail_refunds = True

    with pytest.raises(GatewayError) as exc:
        await refunds.process_refund(db_session, gateway, order.id, "full", None, None, SELLER)
    assert exc.value.status_code == 503

    order = await lifecycle.get_order(db_session, order.id)
    assert order.amount_refunded == 0
    assert order.payment_status == "deposit_paid"

    attempts = await refunds.list_refunds(db_session, order.id)
    assert [r.status for r in attempts] == ["failed"]


@pytest.mark.asyncio
async def test_failure_on_later_leg_reports_partial_refund(db_session, gateway):
    order, _ = await _deposit_order(db_session, gateway)
    req, _ = await balance.request_balance(db_session, order.id, SELLER)
    balance_payment = await balance.pay_balance(db_session, gateway, req)
    await lifecycle.confirm_payment(db_session, balance_payment.intent_id, 7000)
    await db_session.commit()
    gateway.refunds_before_failure = 1

    with pytest.raises(GatewayError) as exc:
        await refunds.process_refund(db_session, gateway, order.id, "partial", None, 8000, SELLER)
    assert exc.value.code == "refund_partially_applied"
    assert "7000 of 8000" in exc.value.message

    assert [(i, a) for i, a, _ in gateway.refunds] == [(balance_payment.intent_id, 7000)]
    order = await lifecycle.get_order(db_session, order.id)
    assert order.amount_refunded == 7000
    assert order.payment_status == "partially_refunded"

    attempts = await refunds.list_refunds(db_session, order.id)
    assert sorted(r.status for r in attempts) == ["failed", "succeeded"]


@pytest.mark.asyncio
async def test_pending_refund_reconciled_as_failed(db_session, gateway):
    order, _ = await _deposit_order(db_session, gateway)
    gateway.refund_status = "pending"

    result = await refunds.process_refund(
        db_session, gateway, order.id, "partial", None, 1000, SELLER
    )
    await db_session.commit()
    assert result.status == "pending"
    assert result.order.amount_refunded == 1000

    await refunds.reconcile_refund(db_session, result.stripe_refund_id, "failed")
    await db_session.commit()

    order = await lifecycle.get_order(db_session, order.id)
    assert order.amount_refunded == 0
    assert order.payment_status == "deposit_paid"


@pytest.mark.asyncio
async def test_cancel_paid_order_refunds_and_restocks(db_session, gateway):
    order, payment = await lifecycle.create_order(
        db_session, gateway, BUYER, checkout_request({"product_id": "mug", "quantity": 2})
    )
    await lifecycle.confirm_payment(db_session, payment.intent_id, 2000)
    await db_session.commit()
    a = await check_availability(db_session, "mug")
    assert (a.sold_stock, a.available_stock) == (2, 3)

    order = await refunds.cancel_order(db_session, gateway, order.id, "out of time", SELLER)
    await db_session.commit()

    assert order.status == "cancelled"
    assert order.payment_status == "refunded"
    assert order.amount_refunded == 2000
    a = await check_availability(db_session, "mug")
    assert (a.sold_stock, a.available_stock) == (0, 5)


@pytest.mark.asyncio
async def test_cancel_unpaid_order_voids_intent(db_session, gateway):
    order, payment = await lifecycle.create_order(
        db_session, gateway, BUYER, checkout_request({"product_id": "mug", "quantity": 1})
    )
    await db_session.commit()

    order = await refunds.cancel_order(db_session, gateway, order.id, None, BUYER)
    await db_session.commit()

    assert order.status == "cancelled"
    assert gateway.cancelled == [payment.intent_id]
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_shipped_order_cannot_be_cancelled(db_session, gateway):
    order, _ = await _deposit_order(db_session, gateway)
    items = await lifecycle.get_order_items(db_session, order.id)
    await lifecycle.update_item_status(db_session, order.id, items[0].id, "shipped")
    await db_session.commit()

    with pytest.raises(ConflictError) as exc:
        await refunds.cancel_order(db_session, gateway, order.id, None, SELLER)
    assert exc.value.code == "order_shipped"
