"""
Upstream event API client.

Reads event timing through the cookie-authenticated admin endpoint and
classifies where "now" falls relative to the event window.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError

from poapcourier.contracts import EventDetails, EventPhase
from poapcourier.errors import UpstreamError

if TYPE_CHECKING:
    from poapcourier.config import LumaConfig

logger = logging.getLogger(__name__)

EVENT_ADMIN_PATH = "/event/admin/get"


def classify_phase(details: EventDetails, now: datetime) -> EventPhase:
    """
    Place ``now`` relative to the event window.

    An event without an end timestamp never ends: it stays ONGOING from its
    start onwards. An event without a start timestamp that has not ended is
    NOT_STARTED.
    """
    if details.end_at is not None and details.end_at < now:
        return EventPhase.ENDED
    if details.start_at is None or details.start_at > now:
        return EventPhase.NOT_STARTED
    return EventPhase.ONGOING


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Unexpected timestamp value: {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_event_details(event_id: str, data: Any) -> EventDetails:
    """Build EventDetails from the admin endpoint JSON body."""
    event = data.get("event") if isinstance(data, dict) else None
    if not isinstance(event, dict):
        raise UpstreamError(f"Event {event_id} response has no event object")

    try:
        return EventDetails(
            event_id=event_id,
            name=event.get("name") or None,
            start_at=_parse_timestamp(event.get("start_at")),
            end_at=_parse_timestamp(event.get("end_at")),
        )
    except (ValueError, ValidationError) as e:
        raise UpstreamError(f"Event {event_id} has malformed timestamps: {e}") from e


class EventGateway:
    """Async client for the upstream event admin API."""

    def __init__(self, config: LumaConfig) -> None:
        self._config = config
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def get_event_details(self, event_id: str, cookie: str) -> EventDetails:
        """
        Fetch name and start/end window for an event.

        Args:
            event_id: Upstream event API id.
            cookie: Current session credential (raw Cookie header value).

        Raises:
            UpstreamError: On network failure, non-2xx status or malformed body.
        """
        url = f"{self._config.api_base_url}{EVENT_ADMIN_PATH}"
        headers = {
            "Cookie": cookie,
            "Accept": "application/json",
            "User-Agent": self._config.user_agent,
        }

        try:
            session = await self._get_session()
            async with session.request(
                "GET", url, params={"event_api_id": event_id}, headers=headers
            ) as resp:
                status = resp.status
                if not 200 <= status < 300:
                    detail = await resp.text()
                    raise UpstreamError(
                        f"Event {event_id} fetch returned HTTP {status}: {detail[:200]}", status
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise UpstreamError(f"Event {event_id} fetch failed: {e}") from e

        details = parse_event_details(event_id, data)
        logger.debug(
            "Fetched event details",
            extra={"event_id": event_id, "has_end": details.end_at is not None},
        )
        return details
