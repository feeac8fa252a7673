"""Upstream event API connector."""

from poapcourier.connectors.luma.gateway import EventGateway, classify_phase, parse_event_details

__all__ = ["EventGateway", "classify_phase", "parse_event_details"]
