"""
Two-cadence orchestrator.

Each pipeline gets its own timer. A tick spawns a run task and goes back to
sleep without awaiting it, so a slow batch run never delays the real-time
cadence. Overlapping ticks of the same cadence are dropped by the pipeline's
busy guard.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from poapcourier.delivery.pipeline import Cadence

if TYPE_CHECKING:
    from collections.abc import Callable

    from poapcourier.config import SchedulerConfig
    from poapcourier.delivery.pipeline import DeliveryPipeline, RunSummary

logger = logging.getLogger(__name__)


@dataclass
class CadenceState:
    """Bookkeeping for /healthz."""

    interval_s: float
    ticks: int = 0
    timeouts: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None


class Orchestrator:
    """
    Drives the real-time and batch pipelines on independent timers.

    Both timers fire immediately on start(). stop() cancels the timers and
    every run still in flight.
    """

    def __init__(
        self,
        realtime: DeliveryPipeline,
        batch: DeliveryPipeline,
        config: SchedulerConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if realtime.cadence is not Cadence.REALTIME:
            raise ValueError(f"realtime pipeline has cadence {realtime.cadence.value}")
        if batch.cadence is not Cadence.BATCH:
            raise ValueError(f"batch pipeline has cadence {batch.cadence.value}")

        self._pipelines = {Cadence.REALTIME: realtime, Cadence.BATCH: batch}
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state = {
            Cadence.REALTIME: CadenceState(interval_s=config.realtime_interval_s),
            Cadence.BATCH: CadenceState(interval_s=config.batch_interval_s),
        }
        self._timers: list[asyncio.Task[None]] = []
        self._runs: set[asyncio.Task[RunSummary | None]] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        """Number of run tasks not yet finished."""
        return len(self._runs)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for cadence, state in self._state.items():
            self._timers.append(
                asyncio.create_task(
                    self._timer_loop(cadence, state.interval_s),
                    name=f"timer-{cadence.value}",
                )
            )
        logger.info(
            "Orchestrator started",
            extra={
                "realtime_interval_s": self._config.realtime_interval_s,
                "batch_interval_s": self._config.batch_interval_s,
            },
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        pending = [*self._timers, *self._runs]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._runs.clear()
        logger.info("Orchestrator stopped", extra={"cancelled": len(pending)})

    async def _timer_loop(self, cadence: Cadence, interval_s: float) -> None:
        while self._running:
            self._spawn(cadence)
            await asyncio.sleep(interval_s)

    def _spawn(self, cadence: Cadence) -> asyncio.Task[RunSummary | None]:
        self._state[cadence].ticks += 1
        task = asyncio.create_task(self.run_once(cadence), name=f"run-{cadence.value}")
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    def trigger_batch(self) -> asyncio.Task[RunSummary | None]:
        """
        Run the batch cadence now, outside its timer.

        Safe to call from a signal handler registered on the running loop.
        If a batch run is already going the new one is dropped by the
        pipeline's busy guard.
        """
        logger.info("Manual batch trigger")
        return self._spawn(Cadence.BATCH)

    async def run_once(self, cadence: Cadence) -> RunSummary | None:
        """Run one pass of a cadence, bounded by run_timeout_s when set."""
        pipeline = self._pipelines[cadence]
        state = self._state[cadence]
        state.last_started_at = self._clock()
        try:
            if self._config.run_timeout_s is None:
                return await pipeline.run()
            return await asyncio.wait_for(pipeline.run(), timeout=self._config.run_timeout_s)
        except TimeoutError:
            state.timeouts += 1
            logger.error(
                "Run timed out",
                extra={"cadence": cadence.value, "timeout_s": self._config.run_timeout_s},
            )
            return None
        finally:
            state.last_finished_at = self._clock()

    def health(self) -> dict[str, Any]:
        """Per-cadence state for /healthz."""
        cadences: dict[str, Any] = {}
        for cadence, state in self._state.items():
            pipeline = self._pipelines[cadence]
            summary = pipeline.last_summary
            cadences[cadence.value] = {
                "interval_s": state.interval_s,
                "busy": pipeline.busy,
                "ticks": state.ticks,
                "timeouts": state.timeouts,
                "last_started_at": _iso(state.last_started_at),
                "last_finished_at": _iso(state.last_finished_at),
                "last_result": summary.result if summary is not None else None,
                "last_delivered": summary.delivered if summary is not None else 0,
                "last_failed": summary.failed if summary is not None else 0,
                "last_drops": len(summary.outcomes) if summary is not None else 0,
            }
        return {
            "status": "ok" if self._running else "stopped",
            "in_flight": self.in_flight,
            "cadences": cadences,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
