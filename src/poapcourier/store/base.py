"""Persistence interface used by the delivery pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from datetime import datetime

    from poapcourier.contracts import Delivery, Drop, Guest, SessionCredential


class Store(Protocol):
    """Durable drops, guests, delivery ledger and session credential.

    The store enforces the ledger invariant: at most one Delivery per
    (drop_id, guest_id). Relations are plain identifiers resolved through
    these queries.
    """

    async def list_active_drops(self, *, real_time_only: bool = False) -> list[Drop]:
        """Active drops, optionally only those flagged for real-time delivery."""

    async def get_drop(self, drop_id: str) -> Drop | None:
        """Single drop by id."""

    async def list_guests(self, drop_id: str) -> list[Guest]:
        """Guests of a drop, in store order."""

    async def list_deliveries(self, drop_id: str) -> list[Delivery]:
        """Ledger rows of a drop."""

    async def delivered_guest_ids(self, drop_id: str) -> set[str]:
        """Guest ids that already have a Delivery for the drop."""

    async def create_delivery(self, delivery: Delivery) -> bool:
        """Append a ledger row. Returns False (no write) if the pair already exists."""

    async def mark_drop_delivered(self, drop_id: str, at: datetime) -> None:
        """Set the drop's completion marker."""

    async def get_session_credential(self, now: datetime) -> SessionCredential | None:
        """Newest session credential still valid at ``now``."""

    async def set_session_credential(self, credential: SessionCredential) -> None:
        """Make ``credential`` the current one, invalidating older ones."""

    async def upsert_drop(self, drop: Drop) -> None:
        """Create or replace a drop (ingestion side)."""

    async def upsert_guest(self, guest: Guest) -> None:
        """Create or replace a guest (ingestion side)."""
