"""
Unit tests for the pricing snapshot and derived statuses.
"""
from __future__ import annotations

import pytest

from orderflow.errors import ConflictError, ValidationError
from orderflow.services.pricing import (
    PricingSnapshot,
    RateTableQuoter,
    derive_fulfillment_status,
    derive_order_status,
    derive_payment_status,
)


def test_snapshot_totals():
    snap = PricingSnapshot.capture(10000, 1000, 800, deposit_amount=3000)
    assert snap.total == 11800
    assert snap.remaining_balance == 11800
    assert snap.requires_deposit


def test_snapshot_rejects_deposit_at_or_above_total():
    with pytest.raises(ValidationError):
        PricingSnapshot.capture(10000, 0, 0, deposit_amount=10000)


def test_snapshot_rejects_negative_and_zero_totals():
    with pytest.raises(ValidationError):
        PricingSnapshot.capture(-1, 0, 0)
    with pytest.raises(ValidationError):
        PricingSnapshot.capture(0, 0, 0)


def test_payment_keeps_snapshot_balanced():
    snap = PricingSnapshot.capture(10000, 0, 0, deposit_amount=3000).with_payment(3000)
    assert snap.amount_paid == 3000
    assert snap.remaining_balance == 7000
    assert snap.amount_paid + snap.remaining_balance == snap.total

    with pytest.raises(ConflictError):
        snap.with_payment(7001)


def test_reshipping_recomputes_the_whole_snapshot():
    snap = PricingSnapshot.capture(10000, 1000, 0, deposit_amount=3000).with_payment(3000)
    moved = snap.with_shipping(2500)
    assert moved.total == 12500
    assert moved.remaining_balance == 9500
    assert moved.amount_paid == 3000
    cols = moved.as_columns()
    assert cols["amount_paid"] + cols["remaining_balance"] == cols["total"]


@pytest.mark.parametrize(
    "paid, refunded, expected",
    [
        (0, 0, "pending"),
        (3000, 0, "deposit_paid"),
        (10000, 0, "fully_paid"),
        (10000, 2000, "partially_refunded"),
        (3000, 3000, "refunded"),
    ],
)
def test_derive_payment_status(paid, refunded, expected):
    assert derive_payment_status(10000, 3000, paid, refunded) == expected


def test_derive_fulfillment_status():
    assert derive_fulfillment_status(["pending", "pending"]) == "unfulfilled"
    assert derive_fulfillment_status(["shipped", "pending"]) == "partially_fulfilled"
    assert derive_fulfillment_status(["shipped", "delivered"]) == "fulfilled"


def test_derive_order_status():
    assert derive_order_status("pending", "pending", ["pending"]) == "pending"
    assert derive_order_status("pending", "deposit_paid", ["pending"]) == "processing"
    assert derive_order_status("processing", "fully_paid", ["shipped", "pending"]) == "shipped"
    assert derive_order_status("shipped", "fully_paid", ["delivered", "delivered"]) == "delivered"
    assert derive_order_status("cancelled", "refunded", ["pending"]) == "cancelled"


def test_rate_table_quoter():
    quoter = RateTableQuoter({"US": 1000, "default": 1500})
    assert quoter.quote({"country": "us"}) == 1000
    assert quoter.quote({"country": "FR"}) == 1500

    with pytest.raises(ValidationError) as exc:
        RateTableQuoter({"US": 1000}).quote({"country": "FR"})
    assert exc.value.code == "unshippable"
