"""Credential provider connector."""

from poapcourier.connectors.poap.issuer import (
    ClaimCode,
    ClaimResult,
    CredentialIssuer,
    code_from_claim_link,
)

__all__ = ["ClaimCode", "ClaimResult", "CredentialIssuer", "code_from_claim_link"]
