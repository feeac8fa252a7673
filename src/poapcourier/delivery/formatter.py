"""
Claim email rendering.

Templates are stored on the drop and use ``{{placeholder}}`` markers:
name, firstName, mintLink (alias poapLink) and eventName. Unknown
placeholders are left untouched. Values are HTML-escaped in the body only.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from poapcourier.contracts import Drop, Guest

DEFAULT_SUBJECT = "Your POAP is ready!"

DEFAULT_BODY = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2>Hello {{firstName}}!</h2>
  <p>Thank you for attending {{eventName}}!</p>

  <p>Your POAP is ready to claim. Click the link below to mint your attendance token:</p>

  <div style="text-align: center; margin: 30px 0;">
    <a href="{{mintLink}}" style="background-color: #7C65C1; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; display: inline-block;">
      Claim Your POAP
    </a>
  </div>

  <p>This POAP serves as a digital memory of your attendance.</p>

  <p style="color: #666; font-size: 14px; margin-top: 30px;">
    If you have any questions, please don't hesitate to reach out.
  </p>
</div>
"""  # noqa: E501

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class FormattedMessage:
    """Rendered email ready for the mail transport."""

    subject: str
    html: str


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute ``{{key}}`` markers; unknown keys are kept verbatim."""

    def _replace(match: re.Match[str]) -> str:
        return values.get(match.group(1), match.group(0))

    return _PLACEHOLDER.sub(_replace, template)


class ClaimEmailFormatter:
    """Renders the claim email for one guest of one drop."""

    def __init__(
        self,
        default_subject: str = DEFAULT_SUBJECT,
        default_body: str = DEFAULT_BODY,
    ) -> None:
        self._default_subject = default_subject
        self._default_body = default_body

    def placeholder_values(
        self, guest: Guest, claim_link: str, event_name: str
    ) -> dict[str, str]:
        return {
            "name": guest.name,
            "firstName": guest.display_first_name,
            "mintLink": claim_link,
            "poapLink": claim_link,
            "eventName": event_name,
        }

    def render(
        self, drop: Drop, guest: Guest, claim_link: str, event_name: str
    ) -> FormattedMessage:
        values = self.placeholder_values(guest, claim_link, event_name)
        escaped = {key: html.escape(value) for key, value in values.items()}

        subject = render_template(drop.email_subject or self._default_subject, values)
        body = render_template(drop.email_body or self._default_body, escaped)
        return FormattedMessage(subject=subject, html=body)
