"""
Webhook notifier.

Posts a JSON notice when a drop is marked fully delivered. The ledger is
already written by then, so a failed notification is only logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiohttp
import orjson

if TYPE_CHECKING:
    from datetime import datetime

    from poapcourier.config import NotifierConfig
    from poapcourier.contracts import Drop

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def sign_body(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@dataclass
class NotifyResult:
    success: bool
    error: str | None = None
    status_code: int | None = None
    retry_after_s: float | None = None


class WebhookNotifier:
    """Generic JSON webhook for drop-completed notices."""

    def __init__(self, config: NotifierConfig) -> None:
        self._config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def build_payload(self, drop: Drop, delivered_count: int, at: datetime) -> bytes:
        return orjson.dumps(
            {
                "status": "delivered",
                "drop_id": drop.id,
                "event_id": drop.event_id,
                "delivered_count": delivered_count,
                "timestamp": at.isoformat(),
            }
        )

    async def notify_drop_completed(
        self, drop: Drop, delivered_count: int, at: datetime
    ) -> NotifyResult:
        if not self._config.enabled:
            return NotifyResult(success=False, error="Webhook notifier not enabled")

        body = self.build_payload(drop, delivered_count, at)
        headers = {"Content-Type": "application/json"}
        if self._config.secret:
            headers[SIGNATURE_HEADER] = sign_body(self._config.secret, body)

        for attempt in range(self._config.max_retries + 1):
            last_attempt = attempt >= self._config.max_retries
            try:
                session = await self._get_session()
                async with session.post(self._config.url, data=body, headers=headers) as resp:
                    status = resp.status

                    if 200 <= status < 300:
                        logger.info("Drop completion notified", extra={"drop_id": drop.id})
                        return NotifyResult(success=True, status_code=status)

                    if status == 429:
                        try:
                            retry_after_s = float(resp.headers.get("Retry-After", "60"))
                        except ValueError:
                            retry_after_s = 60.0
                        logger.warning(
                            "Webhook rate limited",
                            extra={"retry_after": retry_after_s, "attempt": attempt},
                        )
                        if not last_attempt:
                            await asyncio.sleep(min(retry_after_s, 5))
                            continue
                        return NotifyResult(
                            success=False,
                            error=f"Rate limited (retry_after={retry_after_s})",
                            status_code=status,
                            retry_after_s=retry_after_s,
                        )

                    error_text = await resp.text()
                    logger.error(
                        "Webhook notify failed",
                        extra={"status": status, "attempt": attempt},
                    )
                    if status >= 500 and not last_attempt:
                        await asyncio.sleep(1)
                        continue
                    return NotifyResult(
                        success=False,
                        error=f"HTTP {status}: {error_text[:200]}",
                        status_code=status,
                    )

            except (aiohttp.ClientError, TimeoutError) as e:
                logger.error(
                    "Webhook connection error",
                    extra={"error": str(e), "attempt": attempt},
                )
                if not last_attempt:
                    await asyncio.sleep(1)
                    continue
                return NotifyResult(success=False, error=f"Connection error: {e}")

        return NotifyResult(success=False, error="Max retries exceeded")

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
