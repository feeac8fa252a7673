#!/usr/bin/env python3
"""
Show delivery state for one drop.

Prints the drop's settings, every guest with check-in and delivery status,
and the ledger totals. Read-only.

Usage:
    python -m scripts.check_drop DROP_ID
    python -m scripts.check_drop DROP_ID --json
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

import orjson

from poapcourier.store.sql import SqlStore

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./poapcourier.db"


async def load_report(database_url: str, drop_id: str) -> dict[str, object] | None:
    store = SqlStore(database_url)
    try:
        drop = await store.get_drop(drop_id)
        if drop is None:
            return None
        guests = await store.list_guests(drop_id)
        deliveries = {d.guest_id: d for d in await store.list_deliveries(drop_id)}
    finally:
        await store.close()

    rows = []
    for guest in guests:
        delivery = deliveries.get(guest.guest_id)
        rows.append(
            {
                "guest_id": guest.guest_id,
                "name": guest.name,
                "checked_in_at": guest.checked_in_at.isoformat() if guest.checked_in_at else None,
                "has_wallet": bool(guest.wallet_address),
                "delivered_at": delivery.created_at.isoformat() if delivery else None,
            }
        )

    checked_in = sum(1 for g in guests if g.is_checked_in)
    served = sum(1 for g in guests if g.is_checked_in and g.guest_id in deliveries)
    return {
        "drop_id": drop.id,
        "event_id": drop.event_id,
        "target": drop.delivery_target.value,
        "active": drop.is_active,
        "real_time": drop.is_real_time,
        "delivered": drop.delivered,
        "delivered_at": drop.delivered_at.isoformat() if drop.delivered_at else None,
        "guests": len(guests),
        "checked_in": checked_in,
        "deliveries": len(deliveries),
        "pending": checked_in - served,
        "rows": rows,
    }


def print_report(report: dict[str, object]) -> None:
    print(f"Drop {report['drop_id']} (event {report['event_id']})")
    print(f"  target={report['target']} active={report['active']} real_time={report['real_time']}")
    print(f"  delivered={report['delivered']} at {report['delivered_at'] or '-'}")
    print(
        f"  guests={report['guests']} checked_in={report['checked_in']} "
        f"deliveries={report['deliveries']} pending={report['pending']}"
    )
    print()
    print(f"{'GUEST':<24} {'NAME':<24} {'CHECKED IN':<26} {'WALLET':<7} DELIVERED")
    for row in report["rows"]:  # type: ignore[attr-defined]
        print(
            f"{row['guest_id']:<24} {row['name'][:24]:<24} "
            f"{row['checked_in_at'] or '-':<26} {'yes' if row['has_wallet'] else 'no':<7} "
            f"{row['delivered_at'] or '-'}"
        )


def main() -> int:
    parser = argparse.ArgumentParser(description="Show delivery state for one drop.")
    parser.add_argument("drop_id", help="Drop identifier")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    args = parser.parse_args()

    database_url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    report = asyncio.run(load_report(database_url, args.drop_id))
    if report is None:
        print(f"Drop not found: {args.drop_id}", file=sys.stderr)
        return 1

    if args.json:
        sys.stdout.write(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode() + "\n")
    else:
        print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
