"""In-process store, used by tests and single-shot dry runs."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from poapcourier.contracts import Delivery, Drop, Guest, SessionCredential


class InMemoryStore:
    def __init__(self) -> None:
        self._drops: dict[str, Drop] = {}
        self._guests: dict[str, dict[str, Guest]] = {}
        self._deliveries: dict[tuple[str, str], Delivery] = {}
        self._credentials: list[SessionCredential] = []
        self.create_delivery_calls = 0

    async def list_active_drops(self, *, real_time_only: bool = False) -> list[Drop]:
        return [
            drop
            for drop in self._drops.values()
            if drop.is_active and (drop.is_real_time or not real_time_only)
        ]

    async def get_drop(self, drop_id: str) -> Drop | None:
        return self._drops.get(drop_id)

    async def list_guests(self, drop_id: str) -> list[Guest]:
        return list(self._guests.get(drop_id, {}).values())

    async def list_deliveries(self, drop_id: str) -> list[Delivery]:
        return [d for (d_id, _), d in self._deliveries.items() if d_id == drop_id]

    async def delivered_guest_ids(self, drop_id: str) -> set[str]:
        return {guest_id for (d_id, guest_id) in self._deliveries if d_id == drop_id}

    async def create_delivery(self, delivery: Delivery) -> bool:
        self.create_delivery_calls += 1
        if delivery.key in self._deliveries:
            return False
        self._deliveries[delivery.key] = delivery
        return True

    async def mark_drop_delivered(self, drop_id: str, at: datetime) -> None:
        drop = self._drops.get(drop_id)
        if drop is None:
            raise KeyError(drop_id)
        self._drops[drop_id] = drop.model_copy(update={"delivered": True, "delivered_at": at})

    async def get_session_credential(self, now: datetime) -> SessionCredential | None:
        for credential in reversed(self._credentials):
            if credential.is_valid_at(now):
                return credential
        return None

    async def set_session_credential(self, credential: SessionCredential) -> None:
        self._credentials = [credential]

    async def upsert_drop(self, drop: Drop) -> None:
        self._drops[drop.id] = drop

    async def upsert_guest(self, guest: Guest) -> None:
        self._guests.setdefault(guest.drop_id, {})[guest.guest_id] = guest
