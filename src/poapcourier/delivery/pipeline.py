"""
Idempotent per-drop delivery.

Both cadences run the same algorithm and differ only in which drops they list
and which event phase they require:

- REALTIME: real-time drops whose event is ONGOING
- BATCH: all active drops whose event has ENDED; may set the completion marker

Flow per drop:
1. Classify the event phase; skip unless it matches the cadence
2. Eligible = checked-in guests without a ledger row (set difference, recomputed
   every run, no separate "new check-in" state)
3. Abort the whole drop if eligible > unclaimed codes (no partial delivery).
   Codes already sent as claim links (ledger rows) are not counted
4. Deliver per guest; one guest's failure never stops its siblings. Each claim
   link minted in this run is excluded from the next mint
5. Batch only: re-query guests and ledger once and mark the drop delivered when
   every checked-in guest has a row

A Delivery row is written only after the provider or mail transport confirmed
success. A crash between "mail sent" and "row written" re-sends the mail on the
next run: delivery is at-least-once at the mail edge and at-most-once once the
row exists.

The busy flag makes a run non-reentrant within this process only. Two service
instances pointed at the same store will both deliver.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from poapcourier.connectors.luma.gateway import classify_phase
from poapcourier.connectors.poap.issuer import code_from_claim_link
from poapcourier.contracts import Delivery, DeliveryTarget, EventPhase
from poapcourier.delivery.formatter import ClaimEmailFormatter
from poapcourier.delivery.mailer import MailMessage
from poapcourier.errors import ConfigurationError, MailDeliveryError

if TYPE_CHECKING:
    from collections.abc import Callable

    from poapcourier.connectors.luma.gateway import EventGateway
    from poapcourier.connectors.poap.issuer import CredentialIssuer
    from poapcourier.contracts import Drop, Guest, SessionCredential
    from poapcourier.delivery.mailer import MailTransport
    from poapcourier.delivery.notifier import WebhookNotifier
    from poapcourier.exporter import MetricsExporter
    from poapcourier.store.base import Store

logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "the event"


class Cadence(str, Enum):
    """Scheduling cadence a pipeline instance serves."""

    REALTIME = "realtime"
    BATCH = "batch"

    @property
    def required_phase(self) -> EventPhase:
        return EventPhase.ONGOING if self is Cadence.REALTIME else EventPhase.ENDED


class DropStatus(str, Enum):
    SKIPPED_PHASE = "skipped_phase"
    NOTHING_TO_DELIVER = "nothing_to_deliver"
    SHORTAGE = "shortage"
    PROCESSED = "processed"
    FAILED = "failed"


class GuestResult(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"


@dataclass
class DropOutcome:
    """What one run did to one drop."""

    drop_id: str
    status: DropStatus
    target: DeliveryTarget | None = None
    phase: EventPhase | None = None
    eligible: int = 0
    available: int | None = None
    delivered: int = 0
    skipped: int = 0
    failed: int = 0
    completed: bool = False
    error: str | None = None


@dataclass
class RunSummary:
    """Result of one pipeline run."""

    cadence: Cadence
    started_at: datetime
    finished_at: datetime | None = None
    duration_s: float = 0.0
    skipped_reason: str | None = None
    error: str | None = None
    outcomes: list[DropOutcome] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(o.delivered for o in self.outcomes)

    @property
    def failed(self) -> int:
        return sum(o.failed for o in self.outcomes)

    @property
    def result(self) -> str:
        if self.error is not None:
            return "error"
        if self.skipped_reason is not None:
            return "skipped"
        return "ok"


@dataclass
class PipelineMetrics:
    """Counters since the pipeline was built."""

    runs_started: int = 0
    runs_skipped_busy: int = 0
    runs_skipped_config: int = 0
    runs_failed: int = 0
    drops_failed: int = 0
    shortages: int = 0
    deliveries: int = 0
    delivery_failures: int = 0
    drops_completed: int = 0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeliveryPipeline:
    """
    Runs the delivery algorithm for one cadence.

    Collaborators are injected; the pipeline holds no global state beyond
    its busy flag and counters.
    """

    def __init__(
        self,
        cadence: Cadence,
        store: Store,
        gateway: EventGateway,
        issuer: CredentialIssuer,
        mailer: MailTransport,
        *,
        formatter: ClaimEmailFormatter | None = None,
        notifier: WebhookNotifier | None = None,
        exporter: MetricsExporter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cadence = cadence
        self._store = store
        self._gateway = gateway
        self._issuer = issuer
        self._mailer = mailer
        self._formatter = formatter or ClaimEmailFormatter()
        self._notifier = notifier
        self._exporter = exporter
        self._clock = clock or _utcnow
        self._busy = False
        self._metrics = PipelineMetrics()
        self._last_summary: RunSummary | None = None

    @property
    def cadence(self) -> Cadence:
        return self._cadence

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    @property
    def last_summary(self) -> RunSummary | None:
        return self._last_summary

    async def run(self) -> RunSummary | None:
        """
        Run one pass over all eligible drops.

        Returns None when a run of this pipeline is already in progress: the
        request is dropped, not queued. The next tick re-reads current state.
        """
        if self._busy:
            self._metrics.runs_skipped_busy += 1
            logger.warning(
                "Run already in progress, skipping",
                extra={"cadence": self._cadence.value},
            )
            if self._exporter is not None:
                self._exporter.record_busy_skip(self._cadence.value)
            return None

        self._busy = True
        self._metrics.runs_started += 1
        started = time.monotonic()
        summary = RunSummary(cadence=self._cadence, started_at=self._clock())
        try:
            await self._run_once(summary)
        except Exception as e:
            self._metrics.runs_failed += 1
            summary.error = str(e)
            logger.exception("Run failed", extra={"cadence": self._cadence.value})
        finally:
            self._busy = False
            summary.finished_at = self._clock()
            summary.duration_s = time.monotonic() - started

        self._last_summary = summary
        if self._exporter is not None:
            self._exporter.record_run(summary)
        return summary

    async def _run_once(self, summary: RunSummary) -> None:
        cadence = self._cadence.value
        logger.info("Starting run", extra={"cadence": cadence})

        try:
            session = await self.check_preconditions(summary.started_at)
        except ConfigurationError as e:
            self._metrics.runs_skipped_config += 1
            summary.skipped_reason = e.reason
            logger.warning("%s, skipping run", e, extra={"cadence": cadence})
            return

        drops = await self._store.list_active_drops(
            real_time_only=self._cadence is Cadence.REALTIME
        )
        logger.info("Found active drops", extra={"cadence": cadence, "drops": len(drops)})

        for drop in drops:
            try:
                outcome = await self.process_drop(drop, session.cookie)
            except Exception as e:
                self._metrics.drops_failed += 1
                outcome = DropOutcome(
                    drop_id=drop.id,
                    status=DropStatus.FAILED,
                    target=drop.delivery_target,
                    error=str(e),
                )
                logger.error(
                    "Error processing drop",
                    extra={"cadence": cadence, "drop_id": drop.id, "error": str(e)},
                )
            summary.outcomes.append(outcome)

        logger.info(
            "Run completed",
            extra={
                "cadence": cadence,
                "drops": len(drops),
                "delivered": summary.delivered,
                "failed": summary.failed,
            },
        )

    async def check_preconditions(self, now: datetime) -> SessionCredential:
        """
        Return the session credential a run needs.

        Raises:
            ConfigurationError: Provider credentials missing or no valid session.
        """
        if not self._issuer.configured:
            raise ConfigurationError(
                "Credential provider not configured", reason="provider_not_configured"
            )
        session = await self._store.get_session_credential(now)
        if session is None:
            raise ConfigurationError(
                "No valid upstream session in store", reason="no_session_credential"
            )
        return session

    async def process_drop(self, drop: Drop, cookie: str) -> DropOutcome:
        """
        Deliver to every eligible guest of one drop.

        Upstream errors (event fetch, code count) propagate; per-guest errors
        are counted in the outcome.
        """
        log_ctx = {"cadence": self._cadence.value, "drop_id": drop.id}
        outcome = DropOutcome(
            drop_id=drop.id,
            status=DropStatus.NOTHING_TO_DELIVER,
            target=drop.delivery_target,
        )

        details = await self._gateway.get_event_details(drop.event_id, cookie)
        outcome.phase = classify_phase(details, self._clock())
        if outcome.phase is not self._cadence.required_phase:
            outcome.status = DropStatus.SKIPPED_PHASE
            logger.info(
                "Event not in required phase, skipping",
                extra={**log_ctx, "phase": outcome.phase.value},
            )
            return outcome

        event_name = details.name or drop.event_url or DEFAULT_EVENT_NAME

        guests = await self._store.list_guests(drop.id)
        deliveries = await self._store.list_deliveries(drop.id)
        delivered_ids = {d.guest_id for d in deliveries}
        eligible = [g for g in guests if g.is_checked_in and g.guest_id not in delivered_ids]
        outcome.eligible = len(eligible)

        if not eligible:
            logger.debug("No guests awaiting delivery", extra=log_ctx)
            return outcome

        # Minted links stay "unclaimed" upstream until redeemed
        used_codes = _sent_codes(deliveries)
        available = await self._issuer.available_count(
            drop.poap_event_id, drop.poap_secret_code, exclude=used_codes
        )
        outcome.available = available
        if len(eligible) > available:
            self._metrics.shortages += 1
            outcome.status = DropStatus.SHORTAGE
            logger.warning(
                "Not enough codes for eligible guests, retrying next run",
                extra={**log_ctx, "eligible": len(eligible), "available": available},
            )
            return outcome

        outcome.status = DropStatus.PROCESSED
        logger.info(
            "Delivering to eligible guests",
            extra={**log_ctx, "eligible": len(eligible), "available": available},
        )

        for guest in eligible:
            try:
                result = await self._deliver(drop, guest, event_name, used_codes)
            except Exception as e:
                outcome.failed += 1
                self._metrics.delivery_failures += 1
                logger.error(
                    "Delivery to guest failed",
                    extra={
                        **log_ctx,
                        "guest_id": guest.guest_id,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                continue

            if result is GuestResult.DELIVERED:
                outcome.delivered += 1
            else:
                outcome.skipped += 1

        logger.info(
            "Drop processed",
            extra={
                **log_ctx,
                "delivered": outcome.delivered,
                "skipped": outcome.skipped,
                "failed": outcome.failed,
            },
        )

        if self._cadence is Cadence.BATCH and outcome.delivered > 0:
            outcome.completed = await self._mark_if_complete(drop)

        return outcome

    async def _deliver(
        self, drop: Drop, guest: Guest, event_name: str, used_codes: set[str]
    ) -> GuestResult:
        if drop.delivery_target is DeliveryTarget.EMAIL:
            return await self._deliver_by_email(drop, guest, event_name, used_codes)
        return await self._deliver_to_address(drop, guest)

    async def _deliver_by_email(
        self, drop: Drop, guest: Guest, event_name: str, used_codes: set[str]
    ) -> GuestResult:
        if not self._mailer.configured:
            logger.warning(
                "Mail transport not configured, skipping email delivery",
                extra={"drop_id": drop.id, "guest_id": guest.guest_id},
            )
            return GuestResult.SKIPPED
        if not guest.email:
            logger.warning(
                "Guest has no email address, skipping",
                extra={"drop_id": drop.id, "guest_id": guest.guest_id},
            )
            return GuestResult.SKIPPED

        claim_link = await self._issuer.mint_link(
            drop.poap_event_id, drop.poap_secret_code, exclude=used_codes
        )
        code = code_from_claim_link(claim_link)
        if code is not None:
            used_codes.add(code)

        rendered = self._formatter.render(drop, guest, claim_link, event_name)
        result = await self._mailer.send(
            MailMessage(to_address=guest.email, subject=rendered.subject, html=rendered.html)
        )
        if not result.success:
            raise MailDeliveryError(result.error or f"{result.transport_name} send failed")

        return await self._record(drop, guest, claim_link)

    async def _deliver_to_address(self, drop: Drop, guest: Guest) -> GuestResult:
        if not guest.wallet_address:
            # Stays eligible until ingestion fills in the address
            logger.warning(
                "Guest has no wallet address, skipping",
                extra={"drop_id": drop.id, "guest_id": guest.guest_id},
            )
            return GuestResult.SKIPPED

        claim = await self._issuer.claim_to_address(
            drop.poap_event_id, drop.poap_secret_code, guest.wallet_address
        )
        return await self._record(drop, guest, claim.reference)

    async def _record(self, drop: Drop, guest: Guest, claim_reference: str) -> GuestResult:
        delivery = Delivery(
            drop_id=drop.id,
            guest_id=guest.guest_id,
            email=guest.email,
            name=guest.name,
            claim_reference=claim_reference,
            checked_in_at=guest.checked_in_at,
            created_at=self._clock(),
        )
        if not await self._store.create_delivery(delivery):
            logger.warning(
                "Delivery already recorded for guest",
                extra={"drop_id": drop.id, "guest_id": guest.guest_id},
            )
            return GuestResult.DUPLICATE

        self._metrics.deliveries += 1
        logger.info(
            "Delivery recorded",
            extra={
                "drop_id": drop.id,
                "guest_id": guest.guest_id,
                "target": drop.delivery_target.value,
            },
        )
        return GuestResult.DELIVERED

    async def _mark_if_complete(self, drop: Drop) -> bool:
        guests = await self._store.list_guests(drop.id)
        delivered_ids = await self._store.delivered_guest_ids(drop.id)
        checked_in = {g.guest_id for g in guests if g.is_checked_in}

        remaining = checked_in - delivered_ids
        if remaining:
            logger.info(
                "Drop still has undelivered guests",
                extra={"drop_id": drop.id, "remaining": len(remaining)},
            )
            return False

        at = self._clock()
        await self._store.mark_drop_delivered(drop.id, at)
        self._metrics.drops_completed += 1
        logger.info("Drop marked as fully delivered", extra={"drop_id": drop.id})

        if self._notifier is not None and self._notifier.enabled:
            result = await self._notifier.notify_drop_completed(
                drop, delivered_count=len(delivered_ids), at=at
            )
            if not result.success:
                logger.warning(
                    "Drop completion notice not sent",
                    extra={"drop_id": drop.id, "error": result.error},
                )
        return True


def _sent_codes(deliveries: list[Delivery]) -> set[str]:
    """qr_hashes already handed out as claim links for a drop."""
    codes: set[str] = set()
    for delivery in deliveries:
        code = code_from_claim_link(delivery.claim_reference)
        if code is not None:
            codes.add(code)
    return codes
