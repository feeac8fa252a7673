"""Persistence: the Store protocol and its implementations."""

from poapcourier.store.base import Store
from poapcourier.store.memory import InMemoryStore

__all__ = ["InMemoryStore", "Store"]
