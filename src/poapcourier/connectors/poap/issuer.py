"""
Credential provider (POAP) issuance client.

Every call is authenticated through the shared TokenAuthManager and carries
the provider API key. Codes are single-use, and a minted claim link does not
mark its code as claimed: the provider keeps listing it as unclaimed until the
guest redeems it. Callers therefore pass the codes they have already handed
out as ``exclude`` so two guests never receive the same link.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from poapcourier.errors import (
    ClaimError,
    CredentialIssueError,
    NoCodesAvailableError,
    UpstreamError,
)

if TYPE_CHECKING:
    from poapcourier.auth.token_manager import TokenAuthManager
    from poapcourier.config import PoapConfig

logger = logging.getLogger(__name__)

CLAIM_PATH = "/claim/"


def code_from_claim_link(reference: str) -> str | None:
    """qr_hash of a claim link, or None for other references (gallery URLs)."""
    if CLAIM_PATH not in reference:
        return None
    return reference.rsplit(CLAIM_PATH, 1)[1] or None


@dataclass(frozen=True)
class ClaimCode:
    """One code as listed by the provider."""

    qr_hash: str
    claimed: bool


@dataclass(frozen=True)
class ClaimResult:
    """Confirmed claim of one code to a wallet address."""

    qr_hash: str
    address: str
    reference: str


class CredentialIssuer:
    """Counts, mints and claims codes for a provider event."""

    def __init__(self, config: PoapConfig, auth: TokenAuthManager) -> None:
        self._config = config
        self._auth = auth

    @property
    def configured(self) -> bool:
        """False when the API key or OAuth credentials are missing."""
        return self._config.has_api_key and self._auth.configured

    def _headers(self, *, with_body: bool = True) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-API-Key": self._config.api_key,
        }
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def list_codes(self, poap_event_id: str, secret_code: str) -> list[ClaimCode]:
        """List every code of the event with its claimed flag."""
        data = await self._auth.authenticated_request(
            "POST",
            f"{self._config.api_base_url}/event/{poap_event_id}/qr-codes",
            json={"secret_code": secret_code},
            headers=self._headers(),
        )
        if not isinstance(data, list):
            raise UpstreamError(f"Unexpected qr-codes response for event {poap_event_id}")
        return [
            ClaimCode(qr_hash=str(item["qr_hash"]), claimed=bool(item.get("claimed")))
            for item in data
            if isinstance(item, dict) and item.get("qr_hash")
        ]

    async def available_count(
        self,
        poap_event_id: str,
        secret_code: str,
        exclude: Collection[str] = (),
    ) -> int:
        """Number of unclaimed codes not listed in ``exclude``."""
        codes = await self.list_codes(poap_event_id, secret_code)
        return sum(1 for code in codes if not code.claimed and code.qr_hash not in exclude)

    async def _acquire_code(
        self,
        poap_event_id: str,
        secret_code: str,
        exclude: Collection[str] = (),
    ) -> ClaimCode:
        codes = await self.list_codes(poap_event_id, secret_code)
        for code in codes:
            if not code.claimed and code.qr_hash not in exclude:
                return code
        raise NoCodesAvailableError(f"No unclaimed codes left for event {poap_event_id}")

    async def mint_link(
        self,
        poap_event_id: str,
        secret_code: str,
        exclude: Collection[str] = (),
    ) -> str:
        """
        Pick one unclaimed code and return its public claim URL.

        Args:
            exclude: qr_hashes already handed out as links; never picked again.

        Raises:
            NoCodesAvailableError: If every code is claimed or excluded.
        """
        code = await self._acquire_code(poap_event_id, secret_code, exclude)
        return f"{self._config.claim_base_url}{CLAIM_PATH}{code.qr_hash}"

    async def claim_to_address(
        self, poap_event_id: str, secret_code: str, address: str
    ) -> ClaimResult:
        """
        Claim one code directly to a wallet address.

        Phases: acquire an unclaimed code, fetch its one-time claim secret,
        submit the claim. Returns only after the provider confirms the claim.

        Raises:
            ClaimError: With ``phase`` set to "acquire", "secret" or "submit".
        """
        try:
            code = await self._acquire_code(poap_event_id, secret_code)
        except (UpstreamError, CredentialIssueError) as e:
            raise ClaimError(f"Could not acquire a code: {e}", phase="acquire") from e

        claim_url = f"{self._config.api_base_url}/actions/claim-qr"

        try:
            secret_data = await self._auth.authenticated_request(
                "GET",
                claim_url,
                params={"qr_hash": code.qr_hash},
                headers=self._headers(with_body=False),
            )
        except UpstreamError as e:
            raise ClaimError(f"Could not fetch claim secret: {e}", phase="secret") from e

        claim_secret = _extract_secret(secret_data)
        if not claim_secret:
            raise ClaimError("Claim secret missing from provider response", phase="secret")

        try:
            await self._auth.authenticated_request(
                "POST",
                claim_url,
                json={
                    "address": address,
                    "qr_hash": code.qr_hash,
                    "secret": claim_secret,
                    "sendEmail": False,
                },
                headers=self._headers(),
            )
        except UpstreamError as e:
            raise ClaimError(f"Claim submission failed: {e}", phase="submit") from e

        logger.info("Code claimed to address", extra={"event_id": poap_event_id})
        return ClaimResult(
            qr_hash=code.qr_hash,
            address=address,
            reference=f"{self._config.gallery_base_url}/{address}",
        )


def _extract_secret(data: Any) -> str | None:
    if isinstance(data, dict):
        secret = data.get("secret")
        if isinstance(secret, str) and secret:
            return secret
    return None
