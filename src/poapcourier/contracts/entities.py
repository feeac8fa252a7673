"""
Domain contracts shared between the store, the connectors and the pipeline.

Drops and guests are owned by external ingestion; the pipeline reads them and
only ever flips a drop's completion marker. Deliveries are the idempotency
ledger: one row per (drop_id, guest_id), written once.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeliveryTarget(str, Enum):
    """How a drop hands out its credential."""

    EMAIL = "email"
    ADDRESS = "address"


class EventPhase(str, Enum):
    """Temporal phase of an upstream event relative to now."""

    NOT_STARTED = "not_started"
    ONGOING = "ongoing"
    ENDED = "ended"


class Drop(BaseModel):
    """Credential program for one upstream event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Drop identifier")
    event_id: str = Field(..., min_length=1, description="Upstream event id")
    event_url: str | None = Field(default=None, description="Fallback display name")
    is_active: bool = Field(default=True)
    is_real_time: bool = Field(default=False, description="Deliver while the event runs")
    delivery_target: DeliveryTarget = Field(default=DeliveryTarget.EMAIL)
    email_subject: str | None = Field(default=None, description="Subject template")
    email_body: str | None = Field(default=None, description="HTML body template")
    poap_event_id: str = Field(..., min_length=1, description="Credential provider event id")
    poap_secret_code: str = Field(..., min_length=1, repr=False)
    delivered: bool = Field(default=False, description="Every checked-in guest served")
    delivered_at: datetime | None = Field(default=None)

    @field_validator("delivery_target", mode="before")
    @classmethod
    def normalize_target(cls, v: object) -> object:
        """Accept the legacy ``ethereum`` target as ``address``."""
        if isinstance(v, str) and v.lower() == "ethereum":
            return DeliveryTarget.ADDRESS
        return v


class Guest(BaseModel):
    """Attendee of one drop, with check-in state."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    drop_id: str = Field(..., min_length=1)
    guest_id: str = Field(..., min_length=1, description="Unique within the drop")
    name: str = Field(default="")
    first_name: str | None = Field(default=None)
    email: str = Field(default="")
    wallet_address: str | None = Field(default=None)
    checked_in_at: datetime | None = Field(default=None)

    @property
    def is_checked_in(self) -> bool:
        return self.checked_in_at is not None

    @property
    def display_first_name(self) -> str:
        return self.first_name or self.name


class Delivery(BaseModel):
    """Ledger entry: a credential was issued to this guest for this drop."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    drop_id: str = Field(..., min_length=1)
    guest_id: str = Field(..., min_length=1)
    email: str = Field(default="")
    name: str = Field(default="")
    claim_reference: str = Field(..., min_length=1, description="Claim URL or gallery URL")
    checked_in_at: datetime | None = Field(default=None)
    created_at: datetime = Field(...)

    @property
    def key(self) -> tuple[str, str]:
        return (self.drop_id, self.guest_id)


class SessionCredential(BaseModel):
    """Opaque upstream session cookie harvested outside this service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cookie: str = Field(..., min_length=1, repr=False)
    expires_at: datetime | None = Field(default=None)
    created_at: datetime = Field(...)

    def is_valid_at(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


class EventDetails(BaseModel):
    """Upstream event timing."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(..., min_length=1)
    name: str | None = Field(default=None)
    start_at: datetime | None = Field(default=None)
    end_at: datetime | None = Field(default=None, description="Absent for open-ended events")
