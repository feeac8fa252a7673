"""Timers that drive the delivery pipelines."""

from poapcourier.scheduler.orchestrator import Orchestrator

__all__ = ["Orchestrator"]
