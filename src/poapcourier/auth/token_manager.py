"""
Machine-to-machine access token management for the credential provider API.

One TokenAuthManager instance is built at startup from explicit credentials
and handed to every component that talks to the provider. Tokens live in
memory only.

Refresh is single-flight: while a refresh is pending, every caller that needs
a token awaits the same asyncio task and receives the same result (or the
same exception). A failed refresh leaves the cache empty so the next call
starts a new one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp

from poapcourier.errors import AuthenticationError, TokenRefreshError, UpstreamError

if TYPE_CHECKING:
    from collections.abc import Callable

    from poapcourier.config import PoapConfig

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = frozenset({401, 403})


@dataclass(frozen=True)
class AccessToken:
    """Bearer value plus absolute expiry (epoch seconds)."""

    value: str
    expires_at: float


@dataclass
class TokenMetrics:
    refreshes: int = 0
    refresh_failures: int = 0
    auth_retries: int = 0


@dataclass(frozen=True)
class ApiResponse:
    status: int
    data: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class TokenAuthManager:
    """
    Keeps a client-credentials access token fresh and signs requests with it.

    States: no token -> refreshing -> valid -> (within safety margin of
    expiry) refreshing -> valid ...
    """

    def __init__(
        self,
        config: PoapConfig,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """
        Args:
            config: Provider config carrying client id/secret, audience and token URL.
            clock: Returns current epoch seconds. Defaults to time.time.
        """
        self._config = config
        self._clock = clock or time.time
        self._token: AccessToken | None = None
        self._inflight: asyncio.Future[AccessToken] | None = None
        self._session: aiohttp.ClientSession | None = None
        self._metrics = TokenMetrics()

    @property
    def metrics(self) -> TokenMetrics:
        return self._metrics

    @property
    def configured(self) -> bool:
        return self._config.has_oauth_credentials

    @property
    def refresh_in_flight(self) -> bool:
        return self._inflight is not None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _is_fresh(self, token: AccessToken) -> bool:
        return self._clock() < token.expires_at - self._config.token_safety_margin_s

    def invalidate(self, expected: str | None = None) -> None:
        """
        Drop the cached token so the next caller refreshes.

        With ``expected`` set, the cache is only cleared while it still holds
        that value: a token another caller already refreshed is kept.
        """
        if expected is not None and (self._token is None or self._token.value != expected):
            return
        self._token = None

    async def get_valid_token(self) -> str:
        """
        Return a token that is valid for at least the safety margin.

        Raises:
            TokenRefreshError: If the refresh this caller waited on failed.
        """
        token = self._token
        if token is not None and self._is_fresh(token):
            return token.value

        if self._inflight is None:
            task = asyncio.ensure_future(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task

        # shield: one caller being cancelled must not cancel the shared refresh
        token = await asyncio.shield(self._inflight)
        return token.value

    def _clear_inflight(self, task: asyncio.Future[AccessToken]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> AccessToken:
        logger.info("Refreshing provider access token")
        self._token = None

        payload = {
            "audience": self._config.audience,
            "grant_type": "client_credentials",
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }

        try:
            session = await self._get_session()
            async with session.request(
                "POST",
                self._config.token_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            ) as resp:
                status = resp.status
                if not 200 <= status < 300:
                    detail = await resp.text()
                    raise TokenRefreshError(
                        f"Token endpoint returned HTTP {status}: {detail[:200]}", status
                    )
                data = await resp.json()
        except TokenRefreshError:
            self._metrics.refresh_failures += 1
            logger.error("Failed to refresh provider access token")
            raise
        except (aiohttp.ClientError, TimeoutError) as e:
            self._metrics.refresh_failures += 1
            logger.error("Token endpoint unreachable", extra={"error": str(e)})
            raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e

        access = data.get("access_token") if isinstance(data, dict) else None
        expires_in = data.get("expires_in") if isinstance(data, dict) else None
        if not access or not isinstance(expires_in, (int, float)):
            self._metrics.refresh_failures += 1
            raise TokenRefreshError("Token endpoint response missing access_token or expires_in")

        token = AccessToken(value=str(access), expires_at=self._clock() + float(expires_in))
        self._token = token
        self._metrics.refreshes += 1
        logger.info("Provider access token refreshed", extra={"expires_in_s": expires_in})
        return token

    async def _send(
        self,
        method: str,
        url: str,
        bearer: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> ApiResponse:
        request_headers = dict(headers or {})
        request_headers["Authorization"] = f"Bearer {bearer}"

        try:
            session = await self._get_session()
            async with session.request(
                method, url, json=json, params=params, headers=request_headers
            ) as resp:
                status = resp.status
                if 200 <= status < 300:
                    return ApiResponse(status=status, data=await resp.json(content_type=None))
                return ApiResponse(status=status, text=await resp.text())
        except (aiohttp.ClientError, TimeoutError) as e:
            raise UpstreamError(f"{method} {url} failed: {e}") from e

    async def authenticated_request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Send a request with a bearer token and return the decoded JSON body.

        On 401/403 the rejected token is cleared from the cache (unless another
        caller already replaced it), a fresh token is obtained and the request
        is retried exactly once.

        Raises:
            AuthenticationError: If the retried request is rejected again.
            UpstreamError: On any other non-2xx status or network failure.
            TokenRefreshError: If a needed refresh fails.
        """
        bearer = await self.get_valid_token()
        response = await self._send(
            method, url, bearer, json=json, params=params, headers=headers
        )

        if response.status in AUTH_FAILURE_STATUSES:
            logger.info(
                "Provider rejected request, forcing refresh and retrying once",
                extra={"status": response.status},
            )
            self._metrics.auth_retries += 1
            self.invalidate(expected=bearer)
            bearer = await self.get_valid_token()
            response = await self._send(
                method, url, bearer, json=json, params=params, headers=headers
            )
            if response.status in AUTH_FAILURE_STATUSES:
                raise AuthenticationError(
                    f"{method} {url} rejected after refresh: HTTP {response.status}",
                    response.status,
                )

        if not response.ok:
            raise UpstreamError(
                f"{method} {url} returned HTTP {response.status}: {response.text[:200]}",
                response.status,
            )
        return response.data
