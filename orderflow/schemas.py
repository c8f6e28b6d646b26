"""
Pydantic schemas for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# ── Shared ───────────────────────────────────────────────────────────────────

class Address(BaseModel):
    name: Optional[str] = None
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    region: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2)

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.upper()


# ── Stock ────────────────────────────────────────────────────────────────────

class StockAvailabilityOut(BaseModel):
    product_id: str
    variant_key: str
    fulfillment_type: str
    total_stock: int
    reserved_stock: int
    sold_stock: int
    available_stock: int
    is_available: bool

    model_config = {"from_attributes": True}


class StockUpdate(BaseModel):
    variant_id: Optional[str] = None
    total_stock: int = Field(..., ge=0)


class StockRow(BaseModel):
    product_id: str
    variant_key: str
    total_stock: int
    reserved_stock: int
    sold_stock: int
    available_stock: int

    model_config = {"from_attributes": True}


# ── Checkout & orders ────────────────────────────────────────────────────────

class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    size: Optional[str] = None
    color: Optional[str] = None
    variant_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    channel: Literal["retail", "wholesale"] = "retail"
    items: List[CheckoutItem] = Field(..., min_length=1)
    shipping_address: Address
    shipping_cost: int = Field(0, ge=0)
    tax_amount: int = Field(0, ge=0)
    po_number: Optional[str] = None
    incoterms: Optional[str] = None
    payment_terms: Optional[str] = None


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    variant_key: str
    product_name: str
    quantity: int
    unit_price: int
    line_subtotal: int
    item_status: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    channel: str
    buyer_id: str
    seller_id: str
    currency: str
    status: str
    payment_status: str
    fulfillment_status: str
    subtotal_before_tax: int
    shipping_cost: int
    tax_amount: int
    total: int
    deposit_amount: int
    amount_paid: int
    remaining_balance: int
    amount_refunded: int
    snapshot_version: int
    shipping_address: Dict[str, Any]
    po_number: Optional[str] = None
    incoterms: Optional[str] = None
    payment_terms: Optional[str] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class CheckoutResponse(BaseModel):
    order: OrderOut
    payment_intent_id: str
    client_secret: Optional[str]
    amount_due: int
    purpose: str


class ItemStatusUpdate(BaseModel):
    item_status: Literal["shipped", "delivered"]
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


# ── Balance sessions ─────────────────────────────────────────────────────────

class BalanceRequestCreate(BaseModel):
    can_change_address: bool = True


class BalanceRequestOut(BaseModel):
    id: str
    order_id: str
    status: str
    expires_at: datetime
    can_change_address: bool
    token: str
    link: str


class BalanceSessionOut(BaseModel):
    order_id: str
    balance_request_id: str
    currency: str
    subtotal_before_tax: int
    shipping_cost: int
    tax_amount: int
    total: int
    amount_paid: int
    remaining_balance: int
    shipping_address: Dict[str, Any]
    can_change_address: bool
    expires_at: datetime
    snapshot_version: int


class AddressChangeRequest(BaseModel):
    shipping_address: Address


class BalancePaymentOut(BaseModel):
    order_id: str
    payment_intent_id: str
    client_secret: Optional[str]
    amount: int
    currency: str


# ── Refunds ──────────────────────────────────────────────────────────────────

class RefundCreate(BaseModel):
    refund_type: Literal["full", "partial"]
    reason: Optional[str] = None
    # Range checks happen in the refund processor so they map to the right error
    custom_amount: Optional[int] = None


class RefundOut(BaseModel):
    id: str
    order_id: str
    payment_id: Optional[str] = None
    refund_type: str
    amount: int
    currency: str
    reason: Optional[str] = None
    stripe_refund_id: Optional[str] = None
    status: str
    processed_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class RefundResultOut(BaseModel):
    refund: RefundOut
    refunds: List[RefundOut]
    refund_amount: int
    stripe_refund_id: Optional[str]
    status: str
    order: OrderOut


# ── Documents ────────────────────────────────────────────────────────────────

class DocumentRequest(BaseModel):
    order_id: str
    regenerate: bool = False
    notes: Optional[str] = None
    include_pricing: bool = False
    po_number: Optional[str] = None
    incoterms: Optional[str] = None
    payment_terms: Optional[str] = None


class DocumentOut(BaseModel):
    id: str
    order_id: str
    document_type: str
    number: str
    document_url: str
    status: str
    subtotal: Optional[int] = None
    tax_amount: Optional[int] = None
    shipping_cost: Optional[int] = None
    total_amount: Optional[int] = None
    currency: str
    snapshot_version: int
    refund_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentResult(BaseModel):
    document: DocumentOut
    created: bool


# ── Admin ────────────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"
