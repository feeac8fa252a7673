"""Exception hierarchy for poapcourier."""

from __future__ import annotations


class PoapCourierError(Exception):
    """Base class for all poapcourier errors."""


class ConfigurationError(PoapCourierError):
    """Required credentials or settings are missing; the run is skipped."""

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class UpstreamError(PoapCourierError):
    """An upstream HTTP call failed (network error or non-2xx status)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_auth_failure(self) -> bool:
        """True for 401/403 responses."""
        return self.status in (401, 403)


class AuthenticationError(UpstreamError):
    """Request still rejected with 401/403 after one forced token refresh."""


class TokenRefreshError(UpstreamError):
    """The OAuth token endpoint did not return a usable access token."""


class CredentialIssueError(PoapCourierError):
    """Issuing a claim from the credential provider failed."""


class NoCodesAvailableError(CredentialIssueError):
    """The drop has no unclaimed codes left."""


class ClaimError(CredentialIssueError):
    """One phase of the two-phase claim-to-address protocol failed."""

    def __init__(self, message: str, phase: str) -> None:
        super().__init__(message)
        self.phase = phase


class MailDeliveryError(PoapCourierError):
    """The mail transport rejected or failed to send a message."""
