#!/usr/bin/env python3
"""
CLI: operator tasks for the order service.

Usage:
    # Create tables (local development)
    python -m cli.manage --init-db

    # Show stock levels
    python -m cli.manage --stock

    # Set physical stock for a product (or one variant)
    python -m cli.manage --set-stock PRODUCT_ID 25 --variant m-red

    # Show an order with its payments, refunds and documents
    python -m cli.manage --order ORDER_ID

    # Issue a balance payment link
    python -m cli.manage --request-balance ORDER_ID --by seller-1

    # Cancel unpaid orders whose stock reservation has expired (run from cron)
    python -m cli.manage --release-expired
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from orderflow.config import get_settings
from orderflow.database import engine, get_db_ctx
from orderflow.errors import OrderFlowError
from orderflow.models import Base
from orderflow.services import balance, documents, inventory, lifecycle, refunds
from orderflow.services.stripe_client import StripeGateway


async def cmd_init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Tables created.")


async def cmd_stock() -> None:
    async with get_db_ctx() as session:
        rows = await inventory.list_stock(session)

    if not rows:
        print("No stock records found.")
        return

    print(f"\n{'PRODUCT':<38} {'VARIANT':<14} {'TOTAL':>7} {'RESERVED':>9} {'SOLD':>7} {'AVAIL':>7}")
    print("-" * 88)
    for r in rows:
        print(
            f"{r.product_id:<38} {r.variant_key or '-':<14} {r.total_stock:>7} "
            f"{r.reserved_stock:>9} {r.sold_stock:>7} {r.available_stock:>7}"
        )


async def cmd_set_stock(product_id: str, total: int, variant: str | None) -> None:
    async with get_db_ctx() as session:
        row = await inventory.set_total_stock(session, product_id, variant, total)
        print(
            f"{row.product_id} {row.variant_key or '-'}: total={row.total_stock} "
            f"available={row.available_stock}"
        )


async def cmd_order(order_id: str) -> None:
    async with get_db_ctx() as session:
        order = await lifecycle.get_order(session, order_id)
        items = await lifecycle.get_order_items(session, order_id)
        payments = await lifecycle.list_payments(session, order_id)
        refund_rows = await refunds.list_refunds(session, order_id)
        docs = await documents.list_documents(session, order_id)

    print(f"\nOrder {order.id} ({order.channel})")
    print(f"  Status:      {order.status} / {order.payment_status} / {order.fulfillment_status}")
    print(
        f"  Snapshot v{order.snapshot_version}: subtotal={order.subtotal_before_tax} "
        f"shipping={order.shipping_cost} tax={order.tax_amount} total={order.total} {order.currency}"
    )
    print(
        f"  Deposit={order.deposit_amount} paid={order.amount_paid} "
        f"remaining={order.remaining_balance} refunded={order.amount_refunded}"
    )
    print("  Items:")
    for i in items:
        print(f"    - {i.product_name} [{i.variant_key or '-'}] x{i.quantity} {i.item_status}")
    print("  Payments:")
    for p in payments:
        print(f"    - {p.purpose:<8} {p.intent_id} {p.amount} {p.status}")
    if refund_rows:
        print("  Refunds:")
        for r in refund_rows:
            print(f"    - {r.refund_type:<8} {r.amount} {r.status} {r.stripe_refund_id or '-'}")
    if docs:
        print("  Documents:")
        for d in docs:
            print(f"    - {d.number} {d.document_type} {d.status}")


async def cmd_request_balance(order_id: str, requested_by: str) -> None:
    async with get_db_ctx() as session:
        balance_request, token = await balance.request_balance(session, order_id, requested_by)
        print(f"Balance request {balance_request.id} expires {balance_request.expires_at}")
        print(balance.build_link(order_id, token))


async def cmd_release_expired() -> None:
    gateway = StripeGateway.from_settings(get_settings())
    async with get_db_ctx() as session:
        released = await lifecycle.release_expired_reservations(session, gateway)

    if not released:
        print("No expired reservations.")
        return
    for order_id in released:
        print(f"Released reservation: order {order_id}")
    print(f"{len(released)} order(s) cancelled.")


def main() -> None:
    parser = argparse.ArgumentParser(description="OrderFlow operator CLI")
    parser.add_argument("--init-db", action="store_true", help="Create database tables")
    parser.add_argument("--stock", action="store_true", help="Print current stock levels")
    parser.add_argument(
        "--set-stock", nargs=2, metavar=("PRODUCT_ID", "TOTAL"), help="Set total stock"
    )
    parser.add_argument("--variant", metavar="KEY", help="Variant id for --set-stock")
    parser.add_argument("--order", metavar="ORDER_ID", help="Show one order")
    parser.add_argument("--request-balance", metavar="ORDER_ID", help="Issue a balance link")
    parser.add_argument("--by", metavar="SUBJECT", default="operator", help="Requesting subject")
    parser.add_argument(
        "--release-expired", action="store_true", help="Release expired stock reservations"
    )
    args = parser.parse_args()

    try:
        if args.init_db:
            asyncio.run(cmd_init_db())
        elif args.stock:
            asyncio.run(cmd_stock())
        elif args.set_stock:
            product_id, total = args.set_stock
            asyncio.run(cmd_set_stock(product_id, int(total), args.variant))
        elif args.order:
            asyncio.run(cmd_order(args.order))
        elif args.request_balance:
            asyncio.run(cmd_request_balance(args.request_balance, args.by))
        elif args.release_expired:
            asyncio.run(cmd_release_expired())
        else:
            parser.print_help()
    except OrderFlowError as exc:
        print(f"ERROR: {exc.message} ({exc.code})", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
