"""
Document endpoints.

POST /api/documents/invoices/generate
POST /api/wholesale/documents/invoices/generate
POST /api/documents/packing-slips/generate
GET  /api/documents/orders/{order_id}
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.auth import Identity, ensure_order_party, ensure_order_seller
from orderflow.database import get_db
from orderflow.deps import require_identity
from orderflow.errors import NotFoundError
from orderflow.schemas import DocumentOut, DocumentRequest, DocumentResult
from orderflow.services import documents, lifecycle

router = APIRouter(tags=["documents"])


def _extras(body: DocumentRequest) -> dict:
    return body.model_dump(exclude={"order_id", "regenerate"})


async def _invoice(
    db: AsyncSession, identity: Identity, body: DocumentRequest, channel: str
) -> DocumentResult:
    order = await lifecycle.get_order(db, body.order_id)
    if order.channel != channel:
        raise NotFoundError(f"No {channel} order {body.order_id!r}")
    ensure_order_seller(identity, order)
    document, created = await documents.generate_invoice(
        db, order, _extras(body), regenerate=body.regenerate
    )
    return DocumentResult(document=DocumentOut.model_validate(document), created=created)


@router.post("/api/documents/invoices/generate", response_model=DocumentResult)
async def generate_invoice(
    body: DocumentRequest,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> DocumentResult:
    return await _invoice(db, identity, body, "retail")


@router.post("/api/wholesale/documents/invoices/generate", response_model=DocumentResult)
async def generate_wholesale_invoice(
    body: DocumentRequest,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> DocumentResult:
    return await _invoice(db, identity, body, "wholesale")


@router.post("/api/documents/packing-slips/generate", response_model=DocumentResult)
async def generate_packing_slip(
    body: DocumentRequest,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> DocumentResult:
    order = await lifecycle.get_order(db, body.order_id)
    ensure_order_seller(identity, order)
    document, created = await documents.generate_packing_slip(
        db, order, _extras(body), regenerate=body.regenerate
    )
    return DocumentResult(document=DocumentOut.model_validate(document), created=created)


@router.get("/api/documents/orders/{order_id}", response_model=List[DocumentOut])
async def list_documents(
    order_id: str,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> List[DocumentOut]:
    order = await lifecycle.get_order(db, order_id)
    ensure_order_party(identity, order)
    return [DocumentOut.model_validate(d) for d in await documents.list_documents(db, order_id)]
