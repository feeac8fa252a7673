"""
Tests for the delivery pipeline.

Runs both cadences against the in-memory store and in-process fakes.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client.registry import CollectorRegistry

from poapcourier.config import PoapConfig
from poapcourier.connectors.poap.issuer import CredentialIssuer
from poapcourier.contracts import DeliveryTarget, Drop, EventDetails, Guest
from poapcourier.delivery.pipeline import Cadence, DeliveryPipeline, DropStatus
from poapcourier.errors import ConfigurationError, UpstreamError
from poapcourier.exporter import MetricsExporter
from poapcourier.store.memory import InMemoryStore
from tests.fakes import (
    NOW,
    FakeGateway,
    FakeIssuer,
    FakeMailer,
    FakeNotifier,
    ended_event,
    fixed_clock,
    make_delivery,
    make_drop,
    make_guest,
    ongoing_event,
    upcoming_event,
    valid_session,
)


class Harness:
    """A pipeline wired to fakes, plus handles on every fake."""

    def __init__(
        self,
        cadence: Cadence = Cadence.BATCH,
        *,
        codes: int = 10,
        events: dict[str, EventDetails] | None = None,
        gateway: FakeGateway | None = None,
        mailer: FakeMailer | None = None,
        issuer: FakeIssuer | CredentialIssuer | None = None,
        exporter: MetricsExporter | None = None,
    ) -> None:
        self.store = InMemoryStore()
        self.gateway = gateway or FakeGateway(events or {"evt-1": ended_event()})
        self.issuer = issuer or FakeIssuer(codes)
        self.mailer = mailer or FakeMailer()
        self.notifier = FakeNotifier()
        self.pipeline = DeliveryPipeline(
            cadence,
            self.store,
            self.gateway,
            self.issuer,
            self.mailer,
            notifier=self.notifier,
            exporter=exporter,
            clock=fixed_clock,
        )

    async def seed(self, drop: Drop, guests: list[Guest], *, session: bool = True) -> None:
        await self.store.upsert_drop(drop)
        for guest in guests:
            await self.store.upsert_guest(guest)
        if session:
            await self.store.set_session_credential(valid_session())


class TestBatchDelivery:
    """Batch cadence on ended events."""

    @pytest.mark.asyncio
    async def test_two_guests_two_codes_all_delivered(self) -> None:
        """Both guests get a claim email and the drop is marked delivered."""
        h = Harness(codes=2)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.result == "ok"
        assert [m.to_address for m in h.mailer.sent] == ["g1@example.com", "g2@example.com"]
        assert await h.store.delivered_guest_ids("drop-1") == {"g1", "g2"}

        outcome = summary.outcomes[0]
        assert outcome.status == DropStatus.PROCESSED
        assert outcome.eligible == 2
        assert outcome.available == 2
        assert outcome.delivered == 2
        assert outcome.completed is True

        drop = await h.store.get_drop("drop-1")
        assert drop is not None
        assert drop.delivered is True
        assert drop.delivered_at == NOW
        assert h.notifier.notices == [("drop-1", 2, NOW)]

    @pytest.mark.asyncio
    async def test_shortage_delivers_nothing(self) -> None:
        """Fewer codes than eligible guests aborts the drop without partial delivery."""
        h = Harness(codes=1)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].status == DropStatus.SHORTAGE
        assert summary.outcomes[0].available == 1
        assert h.issuer.mint_calls == 0
        assert h.mailer.sent == []
        assert await h.store.list_deliveries("drop-1") == []
        drop = await h.store.get_drop("drop-1")
        assert drop is not None
        assert drop.delivered is False
        assert h.pipeline.metrics.shortages == 1

    @pytest.mark.asyncio
    async def test_shortage_recovers_when_codes_added(self) -> None:
        """The drop stays eligible and is served once codes are topped up."""
        h = Harness(codes=1)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])
        await h.pipeline.run()

        h.issuer.add_codes("1234", 1)
        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].delivered == 2
        assert await h.store.delivered_guest_ids("drop-1") == {"g1", "g2"}

    @pytest.mark.asyncio
    async def test_rerun_after_full_delivery_issues_nothing(self) -> None:
        """A second run sees an empty eligible set and calls no provider endpoint."""
        h = Harness(codes=5)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])
        await h.pipeline.run()

        mint_calls = h.issuer.mint_calls
        count_calls = h.issuer.count_calls
        writes = h.store.create_delivery_calls
        ledger = await h.store.list_deliveries("drop-1")

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].status == DropStatus.NOTHING_TO_DELIVER
        assert h.issuer.mint_calls == mint_calls
        assert h.issuer.count_calls == count_calls
        assert h.store.create_delivery_calls == writes
        assert await h.store.list_deliveries("drop-1") == ledger
        assert len(h.mailer.sent) == 2
        assert len(h.notifier.notices) == 1

    @pytest.mark.asyncio
    async def test_late_check_in_is_picked_up(self) -> None:
        """A guest checked in after the first run is delivered on the next."""
        h = Harness(codes=5)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2", checked_in=False)])

        first = await h.pipeline.run()
        assert first is not None
        assert first.outcomes[0].delivered == 1
        assert first.outcomes[0].completed is True

        await h.store.upsert_guest(make_guest("g2"))
        second = await h.pipeline.run()

        assert second is not None
        assert second.outcomes[0].delivered == 1
        assert await h.store.delivered_guest_ids("drop-1") == {"g1", "g2"}

    @pytest.mark.asyncio
    async def test_guests_not_checked_in_are_ignored(self) -> None:
        h = Harness(codes=5)
        await h.seed(make_drop(), [make_guest("g1", checked_in=False)])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].status == DropStatus.NOTHING_TO_DELIVER
        assert summary.outcomes[0].eligible == 0
        assert h.issuer.count_calls == 0

    @pytest.mark.asyncio
    async def test_skips_ongoing_event(self) -> None:
        """Batch requires an ended event."""
        h = Harness(events={"evt-1": ongoing_event()})
        await h.seed(make_drop(), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].status == DropStatus.SKIPPED_PHASE
        assert h.issuer.count_calls == 0
        assert h.mailer.sent == []

    @pytest.mark.asyncio
    async def test_inactive_drop_not_listed(self) -> None:
        h = Harness()
        await h.seed(make_drop(is_active=False), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes == []
        assert h.gateway.calls == []


class TestEmailTarget:
    @pytest.mark.asyncio
    async def test_template_placeholders_rendered(self) -> None:
        h = Harness(codes=1)
        drop = make_drop(
            email_subject="{{firstName}}, your {{eventName}} badge",
            email_body="<p>Hi {{name}}</p><a href='{{poapLink}}'>claim</a>",
        )
        await h.seed(drop, [make_guest("g1", name="Ada Lovelace", first_name="Ada")])

        await h.pipeline.run()

        message = h.mailer.sent[0]
        assert message.subject == "Ada, your Demo Night badge"
        assert "<p>Hi Ada Lovelace</p>" in message.html
        assert "https://poap.xyz/claim/qr1" in message.html

        (delivery,) = await h.store.list_deliveries("drop-1")
        assert delivery.claim_reference == "https://poap.xyz/claim/qr1"
        assert delivery.email == "g1@example.com"
        assert delivery.created_at == NOW

    @pytest.mark.asyncio
    async def test_event_url_used_when_event_has_no_name(self) -> None:
        event = EventDetails(
            event_id="evt-1", start_at=NOW.replace(hour=8), end_at=NOW.replace(hour=10)
        )
        h = Harness(codes=1, events={"evt-1": event})
        await h.seed(
            make_drop(event_url="demo-night", email_subject="{{eventName}}"),
            [make_guest("g1")],
        )

        await h.pipeline.run()

        assert h.mailer.sent[0].subject == "demo-night"

    @pytest.mark.asyncio
    async def test_failed_send_does_not_stop_siblings(self) -> None:
        """A rejected address leaves that guest eligible; the others are delivered."""
        mailer = FakeMailer()
        mailer.failing_addresses.add("g1@example.com")
        mailer.raising_addresses.add("g2@example.com")
        h = Harness(codes=3, mailer=mailer)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2"), make_guest("g3")])

        summary = await h.pipeline.run()

        assert summary is not None
        outcome = summary.outcomes[0]
        assert outcome.delivered == 1
        assert outcome.failed == 2
        assert outcome.completed is False
        assert await h.store.delivered_guest_ids("drop-1") == {"g3"}
        drop = await h.store.get_drop("drop-1")
        assert drop is not None
        assert drop.delivered is False
        assert h.notifier.notices == []

    @pytest.mark.asyncio
    async def test_unconfigured_mailer_skips_guests(self) -> None:
        h = Harness(codes=2, mailer=FakeMailer(configured=False))
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].skipped == 2
        assert summary.outcomes[0].delivered == 0
        assert h.issuer.mint_calls == 0
        assert await h.store.list_deliveries("drop-1") == []

    @pytest.mark.asyncio
    async def test_guest_without_email_skipped(self) -> None:
        h = Harness(codes=2)
        await h.seed(make_drop(), [make_guest("g1", email=""), make_guest("g2")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].skipped == 1
        assert summary.outcomes[0].delivered == 1
        assert summary.outcomes[0].completed is False


class TestAddressTarget:
    @pytest.mark.asyncio
    async def test_claims_to_wallet(self) -> None:
        h = Harness(codes=2)
        await h.seed(
            make_drop(delivery_target=DeliveryTarget.ADDRESS),
            [
                make_guest("g1", wallet_address="0xabc"),
                make_guest("g2", wallet_address="0xdef"),
            ],
        )

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].delivered == 2
        assert h.issuer.claim_calls == 2
        assert h.mailer.sent == []
        refs = {d.claim_reference for d in await h.store.list_deliveries("drop-1")}
        assert refs == {"https://poap.gallery/0xabc", "https://poap.gallery/0xdef"}

    @pytest.mark.asyncio
    async def test_missing_wallet_skipped_every_run(self) -> None:
        """No wallet means no claim and no ledger row, run after run."""
        h = Harness(codes=2)
        await h.seed(make_drop(delivery_target="ethereum"), [make_guest("g1")])

        for _ in range(3):
            summary = await h.pipeline.run()
            assert summary is not None
            assert summary.result == "ok"
            assert summary.outcomes[0].skipped == 1

        assert h.issuer.claim_calls == 0
        assert await h.store.list_deliveries("drop-1") == []
        drop = await h.store.get_drop("drop-1")
        assert drop is not None
        assert drop.delivered is False

    @pytest.mark.asyncio
    async def test_failed_claim_leaves_guest_eligible(self) -> None:
        issuer = FakeIssuer(3)
        issuer.failing_addresses.add("0xbad")
        h = Harness(issuer=issuer)
        await h.seed(
            make_drop(delivery_target=DeliveryTarget.ADDRESS),
            [make_guest("g1", wallet_address="0xbad"), make_guest("g2", wallet_address="0xok")],
        )

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].failed == 1
        assert summary.outcomes[0].delivered == 1
        assert await h.store.delivered_guest_ids("drop-1") == {"g2"}


def provider_issuer(*codes: str) -> tuple[CredentialIssuer, AsyncMock]:
    """Real issuer over a provider that lists ``codes`` as unclaimed on every call."""
    auth = MagicMock()
    auth.configured = True
    auth.authenticated_request = AsyncMock(
        return_value=[{"qr_hash": code, "claimed": False} for code in codes]
    )
    config = PoapConfig(client_id="client", client_secret="shh", api_key="key")
    return CredentialIssuer(config, auth), auth.authenticated_request


class TestClaimLinks:
    """Minted links stay unclaimed upstream, so each guest must get a different code."""

    @pytest.mark.asyncio
    async def test_each_guest_gets_a_distinct_code(self) -> None:
        issuer, _ = provider_issuer("aaa", "bbb")
        h = Harness(issuer=issuer)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].delivered == 2
        refs = sorted(d.claim_reference for d in await h.store.list_deliveries("drop-1"))
        assert refs == ["https://poap.xyz/claim/aaa", "https://poap.xyz/claim/bbb"]
        assert len({m.html for m in h.mailer.sent}) == 2

    @pytest.mark.asyncio
    async def test_code_sent_in_earlier_run_not_reused(self) -> None:
        issuer, _ = provider_issuer("aaa", "bbb")
        h = Harness(issuer=issuer)
        await h.seed(make_drop(), [make_guest("g0"), make_guest("g1")])
        await h.store.create_delivery(
            make_delivery("drop-1", "g0").model_copy(
                update={"claim_reference": "https://poap.xyz/claim/aaa"}
            )
        )

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].available == 1
        (message,) = h.mailer.sent
        assert "https://poap.xyz/claim/bbb" in message.html
        assert "https://poap.xyz/claim/aaa" not in message.html

    @pytest.mark.asyncio
    async def test_sent_codes_do_not_count_as_supply(self) -> None:
        """Only code left is already out as a link: shortage, nothing sent."""
        issuer, _ = provider_issuer("aaa")
        h = Harness(issuer=issuer)
        await h.seed(make_drop(), [make_guest("g0"), make_guest("g1")])
        await h.store.create_delivery(
            make_delivery("drop-1", "g0").model_copy(
                update={"claim_reference": "https://poap.xyz/claim/aaa"}
            )
        )

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].status == DropStatus.SHORTAGE
        assert summary.outcomes[0].available == 0
        assert h.mailer.sent == []

    @pytest.mark.asyncio
    async def test_fake_issuer_mint_does_not_claim(self) -> None:
        h = Harness(codes=2)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])

        await h.pipeline.run()

        assert h.issuer.minted == ["qr1", "qr2"]
        assert h.issuer.claimed == set()


class TestRealtimeDelivery:
    @pytest.mark.asyncio
    async def test_delivers_during_event_without_marking(self) -> None:
        """Real-time runs deliver but never set the completion marker."""
        h = Harness(Cadence.REALTIME, codes=2, events={"evt-1": ongoing_event()})
        await h.seed(make_drop(is_real_time=True), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].delivered == 1
        assert summary.outcomes[0].completed is False
        drop = await h.store.get_drop("drop-1")
        assert drop is not None
        assert drop.delivered is False
        assert h.notifier.notices == []

    @pytest.mark.asyncio
    async def test_lists_only_real_time_drops(self) -> None:
        h = Harness(Cadence.REALTIME, events={"evt-1": ongoing_event()})
        await h.seed(make_drop(), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes == []
        assert h.gateway.calls == []

    @pytest.mark.asyncio
    async def test_skips_event_not_started(self) -> None:
        h = Harness(Cadence.REALTIME, events={"evt-1": upcoming_event()})
        await h.seed(make_drop(is_real_time=True), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].status == DropStatus.SKIPPED_PHASE
        assert h.issuer.count_calls == 0

    @pytest.mark.asyncio
    async def test_batch_completes_after_realtime(self) -> None:
        """Guests served in real time count toward the batch completion check."""
        realtime = Harness(Cadence.REALTIME, codes=5, events={"evt-1": ongoing_event()})
        await realtime.seed(make_drop(is_real_time=True), [make_guest("g1")])
        await realtime.pipeline.run()

        batch = DeliveryPipeline(
            Cadence.BATCH,
            realtime.store,
            FakeGateway({"evt-1": ended_event()}),
            realtime.issuer,
            realtime.mailer,
            notifier=realtime.notifier,
            clock=fixed_clock,
        )
        await realtime.store.upsert_guest(make_guest("g2"))
        summary = await batch.run()

        assert summary is not None
        assert summary.outcomes[0].delivered == 1
        assert summary.outcomes[0].completed is True
        assert realtime.notifier.notices == [("drop-1", 2, NOW)]


class TestRunPreconditions:
    @pytest.mark.asyncio
    async def test_no_session_skips_run(self) -> None:
        h = Harness()
        await h.seed(make_drop(), [make_guest("g1")], session=False)

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.result == "skipped"
        assert summary.skipped_reason == "no_session_credential"
        assert h.gateway.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_provider_skips_run(self) -> None:
        h = Harness(issuer=FakeIssuer(5, configured=False))
        await h.seed(make_drop(), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.skipped_reason == "provider_not_configured"
        assert h.gateway.calls == []

    @pytest.mark.asyncio
    async def test_preconditions_raise_configuration_error(self) -> None:
        h = Harness(issuer=FakeIssuer(5, configured=False))

        with pytest.raises(ConfigurationError) as exc_info:
            await h.pipeline.check_preconditions(NOW)
        assert exc_info.value.reason == "provider_not_configured"

        h = Harness()
        with pytest.raises(ConfigurationError) as exc_info:
            await h.pipeline.check_preconditions(NOW)
        assert exc_info.value.reason == "no_session_credential"

        await h.store.set_session_credential(valid_session())
        session = await h.pipeline.check_preconditions(NOW)
        assert session.cookie == valid_session().cookie

    @pytest.mark.asyncio
    async def test_upstream_error_isolated_to_drop(self) -> None:
        """One drop's event fetch failing does not stop the next drop."""
        gateway = FakeGateway({"evt-2": ended_event("evt-2")})
        gateway.failures["evt-1"] = UpstreamError("Event evt-1 fetch returned HTTP 502", 502)
        h = Harness(codes=5, gateway=gateway)
        await h.seed(make_drop("drop-1"), [make_guest("g1", "drop-1")])
        await h.seed(make_drop("drop-2", event_id="evt-2"), [make_guest("g2", "drop-2")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.result == "ok"
        statuses = {o.drop_id: o.status for o in summary.outcomes}
        assert statuses == {"drop-1": DropStatus.FAILED, "drop-2": DropStatus.PROCESSED}
        assert await h.store.delivered_guest_ids("drop-2") == {"g2"}
        assert h.pipeline.metrics.drops_failed == 1


class BlockingGateway(FakeGateway):
    """Holds every event fetch until released."""

    def __init__(self, events: dict[str, EventDetails]) -> None:
        super().__init__(events)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_event_details(self, event_id: str, cookie: str) -> EventDetails:
        self.entered.set()
        await self.release.wait()
        return await super().get_event_details(event_id, cookie)


class TestBusyGuard:
    @pytest.mark.asyncio
    async def test_overlapping_run_dropped(self) -> None:
        """A run requested while one is in progress returns None and is not queued."""
        gateway = BlockingGateway({"evt-1": ended_event()})
        h = Harness(codes=2, gateway=gateway)
        await h.seed(make_drop(), [make_guest("g1")])

        first = asyncio.create_task(h.pipeline.run())
        await gateway.entered.wait()

        assert h.pipeline.busy is True
        assert await h.pipeline.run() is None
        assert h.pipeline.metrics.runs_skipped_busy == 1

        gateway.release.set()
        summary = await first

        assert summary is not None
        assert h.pipeline.busy is False
        assert len(gateway.calls) == 1
        assert await h.store.delivered_guest_ids("drop-1") == {"g1"}

    @pytest.mark.asyncio
    async def test_busy_flag_cleared_after_error(self) -> None:
        h = Harness()
        await h.seed(make_drop(), [make_guest("g1")])

        async def broken(*, real_time_only: bool = False) -> list[Drop]:
            raise RuntimeError("store down")

        h.store.list_active_drops = broken  # type: ignore[method-assign]

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.result == "error"
        assert summary.error == "store down"
        assert h.pipeline.busy is False

    @pytest.mark.asyncio
    async def test_two_pipelines_sharing_a_store_write_one_row_per_guest(self) -> None:
        h = Harness(codes=4)
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])
        twin = DeliveryPipeline(
            Cadence.BATCH, h.store, h.gateway, h.issuer, h.mailer, clock=fixed_clock
        )

        await asyncio.gather(h.pipeline.run(), twin.run())

        deliveries = await h.store.list_deliveries("drop-1")
        assert sorted(d.guest_id for d in deliveries) == ["g1", "g2"]


class TestExporterIntegration:
    @pytest.mark.asyncio
    async def test_run_recorded_in_registry(self) -> None:
        registry = CollectorRegistry()
        h = Harness(codes=2, exporter=MetricsExporter(registry=registry))
        await h.seed(make_drop(), [make_guest("g1"), make_guest("g2")])

        await h.pipeline.run()

        assert registry.get_sample_value(
            "poapcourier_runs_total", {"cadence": "batch", "result": "ok"}
        ) == 1.0
        assert registry.get_sample_value(
            "poapcourier_deliveries_total", {"cadence": "batch", "target": "email"}
        ) == 2.0
        assert registry.get_sample_value(
            "poapcourier_drops_total", {"cadence": "batch", "status": "processed"}
        ) == 1.0
        assert registry.get_sample_value("poapcourier_drops_completed_total") == 1.0

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_touch_ledger(self) -> None:
        h = Harness(codes=1)
        h.notifier.succeed = False
        await h.seed(make_drop(), [make_guest("g1")])

        summary = await h.pipeline.run()

        assert summary is not None
        assert summary.outcomes[0].completed is True
        assert await h.store.delivered_guest_ids("drop-1") == {"g1"}
        drop = await h.store.get_drop("drop-1")
        assert drop is not None
        assert drop.delivered is True
