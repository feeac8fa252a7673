"""Connectors for upstream APIs (event platform, credential provider)."""
