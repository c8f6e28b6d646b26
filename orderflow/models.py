"""
SQLAlchemy ORM models: catalogue stock, orders, payments, balance sessions,
refunds, documents and the gateway event log.

All money columns hold integer minor currency units.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


# ── Catalogue & stock ────────────────────────────────────────────────────────

class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    seller_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    wholesale_unit_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Per unit; only meaningful for deposit-taking fulfillment types
    deposit_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fulfillment_type: Mapped[str] = mapped_column(Text, nullable=False, default="in_stock")
    variant_schema: Mapped[str] = mapped_column(Text, nullable=False, default="none")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class StockRecord(Base):
    __tablename__ = "stock_records"

    product_id: Mapped[str] = mapped_column(
        Text, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    # "" is the whole-product key
    variant_key: Mapped[str] = mapped_column(Text, primary_key=True, default="")
    total_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sold_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        CheckConstraint("reserved_stock >= 0", name="ck_stock_reserved_non_negative"),
        CheckConstraint("sold_stock >= 0", name="ck_stock_sold_non_negative"),
        CheckConstraint(
            "total_stock - reserved_stock - sold_stock >= 0",
            name="ck_stock_available_non_negative",
        ),
    )

    @property
    def available_stock(self) -> int:
        return self.total_stock - self.reserved_stock - self.sold_stock


# ── Orders ───────────────────────────────────────────────────────────────────

class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    channel: Mapped[str] = mapped_column(Text, nullable=False, default="retail")
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    fulfillment_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="unfulfilled"
    )

    # ── Pricing snapshot ─────────────────────────────────────────────────────
    subtotal_before_tax: Mapped[int] = mapped_column(Integer, nullable=False)
    shipping_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_balance: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Reserved stock is released if nothing is paid by then
    reservation_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    shipping_address: Mapped[dict] = mapped_column(_JSON, nullable=False)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_balance_payment_intent_id: Mapped[str | None] = mapped_column(
        Text, nullable=True
    )

    # ── Wholesale extras ─────────────────────────────────────────────────────
    po_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    incoterms: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        CheckConstraint("amount_refunded <= amount_paid", name="ck_order_refund_ceiling"),
        CheckConstraint(
            "amount_paid + remaining_balance = total", name="ck_order_snapshot_balanced"
        ),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(Text, ForeignKey("products.id"), nullable=False)
    variant_key: Mapped[str] = mapped_column(Text, nullable=False, default="")
    product_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    line_subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    tracks_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    item_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    tracking_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    carrier: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Payment(Base):
    """One gateway payment intent opened against an order."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purpose: Mapped[str] = mapped_column(Text, nullable=False)   # deposit | balance | full
    intent_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    client_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="requires_payment")
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    balance_request_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# ── Balance sessions ─────────────────────────────────────────────────────────

class BalanceRequest(Base):
    __tablename__ = "balance_requests"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    can_change_address: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requested_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    consumed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class AddressChange(Base):
    __tablename__ = "address_changes"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    balance_request_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_address: Mapped[dict] = mapped_column(_JSON, nullable=False)
    new_address: Mapped[dict] = mapped_column(_JSON, nullable=False)
    previous_shipping_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    new_shipping_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


# ── Refunds & documents ──────────────────────────────────────────────────────

class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_type: Mapped[str] = mapped_column(Text, nullable=False)   # full | partial
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_refund_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    processed_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_type: Mapped[str] = mapped_column(Text, nullable=False)
    number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    document_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    subtotal: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tax_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shipping_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False)
    refund_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    payload: Mapped[dict] = mapped_column(_JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        # At most one active invoice and one active packing slip per order
        Index(
            "uq_documents_one_active",
            "order_id",
            "document_type",
            unique=True,
            postgresql_where=text("status = 'active' AND document_type <> 'credit_note'"),
            sqlite_where=text("status = 'active' AND document_type <> 'credit_note'"),
        ),
    )


# ── Gateway event log ────────────────────────────────────────────────────────

class WebhookEvent(Base):
    """Idempotency log: one row per gateway event id ever processed."""
    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(Text, nullable=False, default="applied")
    order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
