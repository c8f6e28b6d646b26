"""
Invoices, packing slips and credit notes.

Monetary fields are copied from the order's pricing snapshot (credit notes:
from the refund) and frozen on the document row. Rendering to PDF is done
elsewhere from ``payload``.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import get_settings
from orderflow.models import Document, Order, OrderItem, Refund
from orderflow.services import lifecycle
from orderflow.services.pricing import PricingSnapshot

logger = logging.getLogger(__name__)
settings = get_settings()

DOC_INVOICE = "invoice"
DOC_PACKING_SLIP = "packing_slip"
DOC_CREDIT_NOTE = "credit_note"

DOC_ACTIVE = "active"
DOC_SUPERSEDED = "superseded"

_PREFIXES = {DOC_INVOICE: "INV", DOC_PACKING_SLIP: "PS", DOC_CREDIT_NOTE: "CN"}
_WHOLESALE_FIELDS = ("po_number", "incoterms", "payment_terms")


def document_number(document_type: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return f"{_PREFIXES[document_type]}-{stamp}-{secrets.token_hex(3).upper()}"


def document_url(document_type: str, number: str) -> str:
    return f"{settings.document_base_url.rstrip('/')}/{document_type}/{number}.pdf"


def _item_lines(items: List[OrderItem], include_pricing: bool) -> List[Dict[str, Any]]:
    lines = []
    for item in items:
        line: Dict[str, Any] = {
            "item_id": item.id,
            "product_id": item.product_id,
            "product_name": item.product_name,
            "variant_key": item.variant_key,
            "quantity": item.quantity,
            "item_status": item.item_status,
        }
        if include_pricing:
            line["unit_price"] = item.unit_price
            line["line_subtotal"] = item.line_subtotal
        lines.append(line)
    return lines


async def _active_document(
    session: AsyncSession, order_id: str, document_type: str
) -> Optional[Document]:
    return (
        await session.execute(
            select(Document)
            .where(
                Document.order_id == order_id,
                Document.document_type == document_type,
                Document.status == DOC_ACTIVE,
            )
            .order_by(Document.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def _issue(
    session: AsyncSession,
    order: Order,
    document_type: str,
    extras: Mapping[str, Any],
    regenerate: bool,
    include_pricing: bool,
) -> Tuple[Document, bool]:
    existing = await _active_document(session, order.id, document_type)
    if existing is not None and not regenerate:
        return existing, False

    snapshot = PricingSnapshot.from_order(order)
    items = await lifecycle.get_order_items(session, order.id)

    payload: Dict[str, Any] = {
        "order_id": order.id,
        "channel": order.channel,
        "currency": order.currency,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "shipping_address": dict(order.shipping_address),
        "items": _item_lines(items, include_pricing),
        "notes": extras.get("notes"),
    }
    if order.channel == "wholesale":
        for field in _WHOLESALE_FIELDS:
            payload[field] = extras.get(field) or getattr(order, field)
    if include_pricing:
        payload["totals"] = {
            **snapshot.as_columns(),
            "amount_refunded": order.amount_refunded,
        }

    if existing is not None:
        existing.status = DOC_SUPERSEDED
        await session.flush()

    order_id = order.id
    number = document_number(document_type)
    document = Document(
        order_id=order.id,
        document_type=document_type,
        number=number,
        document_url=document_url(document_type, number),
        status=DOC_ACTIVE,
        subtotal=snapshot.subtotal_before_tax if include_pricing else None,
        tax_amount=snapshot.tax_amount if include_pricing else None,
        shipping_cost=snapshot.shipping_cost if include_pricing else None,
        total_amount=snapshot.total if include_pricing else None,
        currency=order.currency,
        snapshot_version=order.snapshot_version,
        payload=payload,
    )
    session.add(document)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent request issued the active document first
        await session.rollback()
        winner = await _active_document(session, order_id, document_type)
        if winner is None:
            raise
        logger.info(
            "Document already issued concurrently: type=%s number=%s order=%s",
            document_type, winner.number, order_id,
        )
        return winner, False

    logger.info(
        "Document issued: type=%s number=%s order=%s version=%d replaced=%s",
        document_type, number, order.id, order.snapshot_version,
        existing.number if existing is not None else None,
    )
    return document, True


async def generate_invoice(
    session: AsyncSession,
    order: Order,
    extras: Optional[Mapping[str, Any]] = None,
    regenerate: bool = False,
) -> Tuple[Document, bool]:
    """Return (document, created); the active invoice is reused unless *regenerate*."""
    return await _issue(session, order, DOC_INVOICE, extras or {}, regenerate, True)


async def generate_packing_slip(
    session: AsyncSession,
    order: Order,
    extras: Optional[Mapping[str, Any]] = None,
    regenerate: bool = False,
) -> Tuple[Document, bool]:
    extras = extras or {}
    return await _issue(
        session, order, DOC_PACKING_SLIP, extras, regenerate, bool(extras.get("include_pricing"))
    )


async def generate_credit_note(session: AsyncSession, order: Order, refund: Refund) -> Document:
    """One credit note per refund, valued at the refund amount."""
    existing = (
        await session.execute(select(Document).where(Document.refund_id == refund.id))
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    number = document_number(DOC_CREDIT_NOTE)
    document = Document(
        order_id=order.id,
        document_type=DOC_CREDIT_NOTE,
        number=number,
        document_url=document_url(DOC_CREDIT_NOTE, number),
        status=DOC_ACTIVE,
        total_amount=refund.amount,
        currency=refund.currency,
        snapshot_version=order.snapshot_version,
        refund_id=refund.id,
        payload={
            "order_id": order.id,
            "refund_id": refund.id,
            "refund_type": refund.refund_type,
            "reason": refund.reason,
            "amount": refund.amount,
            "currency": refund.currency,
            "order_total": order.total,
            "amount_paid": order.amount_paid,
        },
    )
    session.add(document)
    await session.flush()
    logger.info(
        "Credit note issued: number=%s order=%s refund=%s amount=%d",
        number, order.id, refund.id, refund.amount,
    )
    return document


async def void_credit_note(session: AsyncSession, refund: Refund) -> None:
    document = (
        await session.execute(select(Document).where(Document.refund_id == refund.id))
    ).scalar_one_or_none()
    if document is not None and document.status == DOC_ACTIVE:
        document.status = DOC_SUPERSEDED
        await session.flush()
        logger.info("Credit note voided: number=%s refund=%s", document.number, refund.id)


async def list_documents(session: AsyncSession, order_id: str) -> List[Document]:
    return list(
        (
            await session.execute(
                select(Document)
                .where(Document.order_id == order_id)
                .order_by(Document.created_at)
            )
        ).scalars().all()
    )
