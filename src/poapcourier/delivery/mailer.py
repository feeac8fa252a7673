"""
Outbound mail transport.

The pipeline only needs "send one HTML message"; the SMTP implementation
bounds every send with the configured timeout.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import TYPE_CHECKING

import aiosmtplib

if TYPE_CHECKING:
    from poapcourier.config import SmtpConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailMessage:
    to_address: str
    subject: str
    html: str


@dataclass
class SendResult:
    """Result of a send attempt."""

    success: bool
    transport_name: str
    error: str | None = None


class MailTransport(ABC):
    """Abstract base class for mail transports."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short name used in logs."""
        ...

    @property
    @abstractmethod
    def configured(self) -> bool:
        """False when the transport lacks credentials and must not be used."""
        ...

    @abstractmethod
    async def send(self, message: MailMessage) -> SendResult:
        """Send one message. Returns a failed result instead of raising."""
        ...

    async def close(self) -> None:
        """Release any held resources."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class SmtpMailTransport(MailTransport):
    """SMTP transport; opens one connection per message."""

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    @property
    def name(self) -> str:
        return f"smtp:{self._config.host}"

    @property
    def configured(self) -> bool:
        return self._config.configured

    def build_message(self, message: MailMessage) -> EmailMessage:
        mime = EmailMessage()
        mime["From"] = self._config.from_address
        mime["To"] = message.to_address
        mime["Subject"] = message.subject
        mime.set_content("This message requires an HTML-capable mail client.")
        mime.add_alternative(message.html, subtype="html")
        return mime

    async def send(self, message: MailMessage) -> SendResult:
        if not self.configured:
            return SendResult(
                success=False,
                transport_name=self.name,
                error="SMTP transport not configured",
            )

        try:
            await aiosmtplib.send(
                self.build_message(message),
                hostname=self._config.host,
                port=self._config.port,
                username=self._config.username,
                password=self._config.password,
                start_tls=self._config.start_tls,
                timeout=self._config.timeout_s,
            )
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
            logger.error("SMTP send failed", extra={"error": str(e), "host": self._config.host})
            return SendResult(success=False, transport_name=self.name, error=str(e))

        return SendResult(success=True, transport_name=self.name)
