#!/usr/bin/env python3
"""
Store a new upstream session cookie.

The event API has no programmatic login; an operator copies the session
cookie from a browser and stores it here. The value is read from stdin so it
never lands in shell history.

Usage:
    pbpaste | python -m scripts.set_session_cookie --expires-in-days 30
    python -m scripts.set_session_cookie --no-expiry < cookie.txt
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import UTC, datetime, timedelta

from poapcourier.contracts import SessionCredential
from poapcourier.logging_config import setup_logging
from poapcourier.store.sql import SqlStore

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./poapcourier.db"


async def store_cookie(database_url: str, credential: SessionCredential) -> None:
    store = SqlStore(database_url)
    try:
        await store.init_schema()
        await store.set_session_credential(credential)
    finally:
        await store.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Store a new upstream session cookie.")
    expiry = parser.add_mutually_exclusive_group()
    expiry.add_argument(
        "--expires-in-days",
        type=float,
        default=30.0,
        help="Validity window from now (default: 30)",
    )
    expiry.add_argument(
        "--no-expiry",
        action="store_true",
        help="Store without an expiry",
    )
    args = parser.parse_args()
    setup_logging(json_format=False)

    value = sys.stdin.read().strip()
    if not value:
        logger.error("Nothing on stdin")
        return 2

    now = datetime.now(UTC)
    expires_at = None if args.no_expiry else now + timedelta(days=args.expires_in_days)
    credential = SessionCredential(cookie=value, expires_at=expires_at, created_at=now)

    asyncio.run(store_cookie(os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL), credential))
    logger.info("Session stored (expires %s)", expires_at.isoformat() if expires_at else "never")
    return 0


if __name__ == "__main__":
    sys.exit(main())
