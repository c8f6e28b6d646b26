"""
Caller identity read from the signed session cookie.

The identity provider's login flow writes ``subject_id`` and ``role`` into
the Starlette session; this service only reads them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from orderflow.errors import ForbiddenError
from orderflow.models import Order

ROLE_BUYER = "buyer"
ROLE_SELLER = "seller"
ROLE_ADMIN = "admin"
ROLES = (ROLE_BUYER, ROLE_SELLER, ROLE_ADMIN)


@dataclass(frozen=True)
class Identity:
    subject_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def get_session_identity(request: Request) -> Optional[Identity]:
    subject_id = request.session.get("subject_id")
    role = request.session.get("role")
    if not subject_id or role not in ROLES:
        return None
    return Identity(subject_id=str(subject_id), role=role)


# ── Ownership checks ─────────────────────────────────────────────────────────

def is_order_party(identity: Optional[Identity], order: Order) -> bool:
    if identity is None:
        return False
    return identity.is_admin or identity.subject_id in (order.buyer_id, order.seller_id)


def ensure_order_party(identity: Optional[Identity], order: Order) -> None:
    if not is_order_party(identity, order):
        raise ForbiddenError("Not a party to this order")


def ensure_order_seller(identity: Optional[Identity], order: Order) -> None:
    if identity is None or not (identity.is_admin or identity.subject_id == order.seller_id):
        raise ForbiddenError("Only the selling party may do this")
