"""
Delivery module.

Turns check-ins into claim emails or direct on-chain claims, records each
delivery in the ledger, and reports drop completion.
"""

from __future__ import annotations

from poapcourier.delivery.formatter import ClaimEmailFormatter, FormattedMessage
from poapcourier.delivery.mailer import MailMessage, MailTransport, SendResult, SmtpMailTransport
from poapcourier.delivery.notifier import WebhookNotifier
from poapcourier.delivery.pipeline import (
    Cadence,
    DeliveryPipeline,
    DropOutcome,
    DropStatus,
    RunSummary,
)

__all__ = [
    "Cadence",
    "ClaimEmailFormatter",
    "DeliveryPipeline",
    "DropOutcome",
    "DropStatus",
    "FormattedMessage",
    "MailMessage",
    "MailTransport",
    "RunSummary",
    "SendResult",
    "SmtpMailTransport",
    "WebhookNotifier",
]
