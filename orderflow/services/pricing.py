"""
Pricing snapshot and the pure status derivations built on it.

The snapshot is captured once at checkout and only ever replaced as a whole
(re-snapshot on a shipping-address change); documents and refunds read it,
they never re-sum line items.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Mapping

from orderflow.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

# ── Status vocabularies ─────────────────────────────────────────────────────

PAYMENT_PENDING = "pending"
PAYMENT_DEPOSIT_PAID = "deposit_paid"
PAYMENT_FULLY_PAID = "fully_paid"
PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"
PAYMENT_REFUNDED = "refunded"

ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

ITEM_PENDING = "pending"
ITEM_SHIPPED = "shipped"
ITEM_DELIVERED = "delivered"

FULFILLMENT_UNFULFILLED = "unfulfilled"
FULFILLMENT_PARTIAL = "partially_fulfilled"
FULFILLMENT_FULFILLED = "fulfilled"

DEPOSIT_FULFILLMENT_TYPES = frozenset({"pre_order", "made_to_order", "wholesale"})


@dataclass(frozen=True)
class PricingSnapshot:
    subtotal_before_tax: int
    shipping_cost: int
    tax_amount: int
    deposit_amount: int = 0
    amount_paid: int = 0

    @property
    def total(self) -> int:
        return self.subtotal_before_tax + self.shipping_cost + self.tax_amount

    @property
    def remaining_balance(self) -> int:
        return self.total - self.amount_paid

    @property
    def requires_deposit(self) -> bool:
        return self.deposit_amount > 0

    @classmethod
    def capture(
        cls,
        subtotal_before_tax: int,
        shipping_cost: int,
        tax_amount: int,
        deposit_amount: int = 0,
    ) -> "PricingSnapshot":
        for name, value in (
            ("subtotal_before_tax", subtotal_before_tax),
            ("shipping_cost", shipping_cost),
            ("tax_amount", tax_amount),
            ("deposit_amount", deposit_amount),
        ):
            if value < 0:
                raise ValidationError(f"{name} must not be negative")
        snapshot = cls(subtotal_before_tax, shipping_cost, tax_amount, deposit_amount)
        if snapshot.total <= 0:
            raise ValidationError("Order total must be positive")
        if deposit_amount >= snapshot.total:
            raise ValidationError("Deposit must be smaller than the order total")
        return snapshot

    @classmethod
    def from_order(cls, order) -> "PricingSnapshot":
        snapshot = cls(
            subtotal_before_tax=order.subtotal_before_tax,
            shipping_cost=order.shipping_cost,
            tax_amount=order.tax_amount,
            deposit_amount=order.deposit_amount,
            amount_paid=order.amount_paid,
        )
        if snapshot.total != order.total or snapshot.remaining_balance != order.remaining_balance:
            logger.error(
                "Pricing snapshot out of balance for order=%s total=%d paid=%d remaining=%d",
                order.id, order.total, order.amount_paid, order.remaining_balance,
            )
            raise ConflictError("Order pricing snapshot is inconsistent", code="snapshot_invalid")
        return snapshot

    def with_shipping(self, shipping_cost: int) -> "PricingSnapshot":
        if shipping_cost < 0:
            raise ValidationError("shipping_cost must not be negative")
        updated = replace(self, shipping_cost=shipping_cost)
        if updated.remaining_balance < 0:
            raise ConflictError(
                "New shipping cost would leave a negative balance", code="snapshot_invalid"
            )
        return updated

    def with_payment(self, amount: int) -> "PricingSnapshot":
        if amount <= 0 or amount > self.remaining_balance:
            raise ConflictError("Payment exceeds the remaining balance", code="payment_mismatch")
        return replace(self, amount_paid=self.amount_paid + amount)

    def as_columns(self) -> Dict[str, int]:
        """Every persisted snapshot column, for one all-or-nothing write."""
        return {
            "subtotal_before_tax": self.subtotal_before_tax,
            "shipping_cost": self.shipping_cost,
            "tax_amount": self.tax_amount,
            "total": self.total,
            "deposit_amount": self.deposit_amount,
            "amount_paid": self.amount_paid,
            "remaining_balance": self.remaining_balance,
        }

    def apply_to(self, order) -> None:
        for column, value in self.as_columns().items():
            setattr(order, column, value)


# ── Derived statuses (pure) ──────────────────────────────────────────────────

def derive_payment_status(
    total: int, deposit_amount: int, amount_paid: int, amount_refunded: int = 0
) -> str:
    if amount_refunded > 0:
        return PAYMENT_REFUNDED if amount_refunded >= amount_paid else PAYMENT_PARTIALLY_REFUNDED
    if amount_paid <= 0:
        return PAYMENT_PENDING
    if amount_paid >= total:
        return PAYMENT_FULLY_PAID
    if deposit_amount > 0 and amount_paid >= deposit_amount:
        return PAYMENT_DEPOSIT_PAID
    # Partial captures other than the deposit are rejected upstream.
    return PAYMENT_PENDING


def derive_fulfillment_status(item_statuses: Iterable[str]) -> str:
    statuses = list(item_statuses)
    moved = [s for s in statuses if s in (ITEM_SHIPPED, ITEM_DELIVERED)]
    if not moved:
        return FULFILLMENT_UNFULFILLED
    if len(moved) == len(statuses):
        return FULFILLMENT_FULFILLED
    return FULFILLMENT_PARTIAL


def derive_order_status(current: str, payment_status: str, item_statuses: Iterable[str]) -> str:
    """Order status after a payment or item change; cancelled is terminal."""
    if current == ORDER_CANCELLED:
        return current
    statuses = list(item_statuses)
    if statuses and all(s == ITEM_DELIVERED for s in statuses):
        return ORDER_DELIVERED
    if any(s in (ITEM_SHIPPED, ITEM_DELIVERED) for s in statuses):
        return ORDER_SHIPPED
    if payment_status == PAYMENT_PENDING:
        return ORDER_PENDING
    return ORDER_PROCESSING


# ── Shipping quotes ──────────────────────────────────────────────────────────

class RateTableQuoter:
    """
    Flat per-country shipping rates (minor units) from configuration.
    Stands in for the external shipping service; swap via dependency override.
    """

    def __init__(self, rates: Mapping[str, int]) -> None:
        self._rates = dict(rates)

    def quote(self, address: Mapping[str, object]) -> int:
        country = str(address.get("country") or "").upper()
        if country in self._rates:
            return self._rates[country]
        if "default" in self._rates:
            return self._rates["default"]
        raise ValidationError(f"No shipping rate for country {country!r}", code="unshippable")
