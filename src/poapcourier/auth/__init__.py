"""Credential provider authentication."""

from poapcourier.auth.token_manager import AccessToken, TokenAuthManager, TokenMetrics

__all__ = ["AccessToken", "TokenAuthManager", "TokenMetrics"]
