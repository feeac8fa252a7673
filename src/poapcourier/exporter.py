"""
Prometheus metrics for delivery runs.

Labels are restricted to small closed sets (cadence, target, status). Drop,
guest and event identifiers never become labels.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from poapcourier.auth.token_manager import TokenMetrics
    from poapcourier.delivery.pipeline import RunSummary

# Labels that would cause cardinality explosion
FORBIDDEN_LABELS = frozenset({"drop_id", "guest_id", "event_id", "email", "address", "qr_hash"})


class MetricsExporter:
    """
    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.record_run(summary)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._runs = Counter(
            "poapcourier_runs",
            "Pipeline runs by cadence and result",
            ["cadence", "result"],
            registry=self._registry,
        )
        self._runs_skipped_busy = Counter(
            "poapcourier_runs_skipped_busy",
            "Runs dropped because the previous run of the same cadence was still going",
            ["cadence"],
            registry=self._registry,
        )
        self._drops = Counter(
            "poapcourier_drops",
            "Drop outcomes by cadence and status",
            ["cadence", "status"],
            registry=self._registry,
        )
        self._deliveries = Counter(
            "poapcourier_deliveries",
            "Deliveries recorded in the ledger",
            ["cadence", "target"],
            registry=self._registry,
        )
        self._delivery_failures = Counter(
            "poapcourier_delivery_failures",
            "Per-guest delivery failures",
            ["cadence", "target"],
            registry=self._registry,
        )
        self._drops_completed = Counter(
            "poapcourier_drops_completed",
            "Drops marked fully delivered",
            registry=self._registry,
        )
        self._last_run_duration = Gauge(
            "poapcourier_last_run_duration_seconds",
            "Wall time of the most recent run",
            ["cadence"],
            registry=self._registry,
        )
        self._last_run_finished = Gauge(
            "poapcourier_last_run_finished_timestamp_seconds",
            "Epoch seconds when the most recent run finished",
            ["cadence"],
            registry=self._registry,
        )
        self._provider_refreshes = Gauge(
            "poapcourier_provider_refreshes",
            "Provider access token refreshes since start",
            registry=self._registry,
        )
        self._provider_refresh_failures = Gauge(
            "poapcourier_provider_refresh_failures",
            "Failed provider access token refreshes since start",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_busy_skip(self, cadence: str) -> None:
        self._runs_skipped_busy.labels(cadence=cadence).inc()

    def record_run(self, summary: RunSummary) -> None:
        cadence = summary.cadence.value
        self._runs.labels(cadence=cadence, result=summary.result).inc()

        for outcome in summary.outcomes:
            self._drops.labels(cadence=cadence, status=outcome.status.value).inc()
            target = outcome.target.value if outcome.target is not None else "unknown"
            if outcome.delivered:
                self._deliveries.labels(cadence=cadence, target=target).inc(outcome.delivered)
            if outcome.failed:
                self._delivery_failures.labels(cadence=cadence, target=target).inc(outcome.failed)
            if outcome.completed:
                self._drops_completed.inc()

        self._last_run_duration.labels(cadence=cadence).set(summary.duration_s)
        if summary.finished_at is not None:
            self._last_run_finished.labels(cadence=cadence).set(summary.finished_at.timestamp())

    def update_token_metrics(self, metrics: TokenMetrics) -> None:
        self._provider_refreshes.set(metrics.refreshes)
        self._provider_refresh_failures.set(metrics.refresh_failures)
