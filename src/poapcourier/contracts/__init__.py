"""Data contracts for poapcourier."""

from poapcourier.contracts.entities import (
    Delivery,
    DeliveryTarget,
    Drop,
    EventDetails,
    EventPhase,
    Guest,
    SessionCredential,
)

__all__ = [
    "Delivery",
    "DeliveryTarget",
    "Drop",
    "EventDetails",
    "EventPhase",
    "Guest",
    "SessionCredential",
]
