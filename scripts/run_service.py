#!/usr/bin/env python3
"""
Delivery service for poapcourier.

Wires the store, the upstream clients and both delivery pipelines, then runs
them on their timers until SIGINT/SIGTERM.

Usage:
    python -m scripts.run_service
    python -m scripts.run_service --realtime-interval-s 10 --batch-interval-s 120
    python -m scripts.run_service --once batch   # single batch pass, then exit

Signals:
- SIGINT/SIGTERM: graceful shutdown (timers and in-flight runs cancelled)
- SIGUSR1: run the batch cadence now

Secrets come from the environment only (POAP_CLIENT_ID, POAP_CLIENT_SECRET,
POAP_API_KEY, SMTP_USER, SMTP_PASS, WEBHOOK_URL, WEBHOOK_SECRET,
TRIGGER_SECRET, DATABASE_URL).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace

from prometheus_client.registry import CollectorRegistry

from poapcourier.auth import TokenAuthManager
from poapcourier.config import SchedulerConfig, ServerConfig, ServiceConfig
from poapcourier.connectors.luma import EventGateway
from poapcourier.connectors.poap import CredentialIssuer
from poapcourier.delivery import (
    Cadence,
    ClaimEmailFormatter,
    DeliveryPipeline,
    SmtpMailTransport,
    WebhookNotifier,
)
from poapcourier.exporter import MetricsExporter
from poapcourier.logging_config import setup_logging
from poapcourier.scheduler import Orchestrator
from poapcourier.server import create_app, start_server, stop_server
from poapcourier.store.sql import SqlStore

logger = logging.getLogger(__name__)


class Service:
    """Owns every long-lived resource of the running service."""

    def __init__(self, config: ServiceConfig) -> None:
        self._config = config
        self.registry = CollectorRegistry()
        self.exporter = MetricsExporter(registry=self.registry)

        self.store = SqlStore(config.database_url)
        self.auth = TokenAuthManager(config.poap)
        self.gateway = EventGateway(config.luma)
        self.issuer = CredentialIssuer(config.poap, self.auth)
        self.mailer = SmtpMailTransport(config.smtp)
        self.notifier = WebhookNotifier(config.notifier)
        formatter = ClaimEmailFormatter()

        self.pipelines = {
            cadence: DeliveryPipeline(
                cadence,
                self.store,
                self.gateway,
                self.issuer,
                self.mailer,
                formatter=formatter,
                notifier=self.notifier,
                exporter=self.exporter,
            )
            for cadence in Cadence
        }
        self.orchestrator = Orchestrator(
            self.pipelines[Cadence.REALTIME],
            self.pipelines[Cadence.BATCH],
            config.scheduler,
        )
        self._shutdown = asyncio.Event()

    def health(self) -> dict[str, object]:
        self.exporter.update_token_metrics(self.auth.metrics)
        return self.orchestrator.health()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown.wait()

    async def close(self) -> None:
        await self.orchestrator.stop()
        await self.notifier.close()
        await self.mailer.close()
        await self.gateway.close()
        await self.auth.close()
        await self.store.close()


def setup_signal_handlers(service: Service) -> None:
    """
    SIGINT/SIGTERM only set the shutdown event; main() performs the stop.
    SIGUSR1 spawns a batch run on the loop.
    """
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_shutdown)
    loop.add_signal_handler(signal.SIGUSR1, service.orchestrator.trigger_batch)


async def run_service(config: ServiceConfig, once: Cadence | None = None) -> int:
    service = Service(config)
    await service.store.init_schema()

    if once is not None:
        try:
            summary = await service.orchestrator.run_once(once)
        finally:
            await service.close()
        if summary is None or summary.error is not None:
            return 1
        logger.info(
            "Single run finished",
            extra={
                "cadence": once.value,
                "result": summary.result,
                "delivered": summary.delivered,
                "failed": summary.failed,
            },
        )
        return 0

    runner = None
    if config.server.port > 0:
        app = create_app(
            service.registry,
            health_fn=service.health,
            trigger_fn=service.orchestrator.trigger_batch,
            trigger_secret=config.server.trigger_secret,
        )
        runner = await start_server(app, config.server.host, config.server.port)

    setup_signal_handlers(service)

    try:
        await service.orchestrator.start()
        await service.wait_for_shutdown()
        return 0
    except Exception as e:
        logger.exception("Service failed: %s", e)
        return 1
    finally:
        await service.close()
        if runner is not None:
            await stop_server(runner)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the poapcourier delivery service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--realtime-interval-s",
        type=float,
        default=15.0,
        help="Real-time cadence in seconds (default: 15)",
    )
    parser.add_argument(
        "--batch-interval-s",
        type=float,
        default=60.0,
        help="Batch cadence in seconds (default: 60)",
    )
    parser.add_argument(
        "--run-timeout-s",
        type=float,
        default=None,
        help="Cancel a run after N seconds (default: no limit)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="HTTP bind address (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=9090,
        help="HTTP port for /metrics, /healthz, /trigger (0 to disable, default: 9090)",
    )
    parser.add_argument(
        "--once",
        choices=[c.value for c in Cadence],
        default=None,
        help="Run a single pass of one cadence and exit",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()
    setup_logging(level="DEBUG" if args.verbose else "INFO", json_format=args.json_logs)

    try:
        config = ServiceConfig.from_env()
        config = replace(
            config,
            scheduler=SchedulerConfig(
                realtime_interval_s=args.realtime_interval_s,
                batch_interval_s=args.batch_interval_s,
                run_timeout_s=args.run_timeout_s,
            ),
            server=ServerConfig(
                host=args.host,
                port=args.port,
                trigger_secret=config.server.trigger_secret,
            ),
        )
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    logger.info("Starting poapcourier")
    logger.info("  Real-time cadence: %ss", config.scheduler.realtime_interval_s)
    logger.info("  Batch cadence: %ss", config.scheduler.batch_interval_s)
    logger.info("  Provider: %s", "configured" if config.poap.has_api_key else "NOT configured")
    logger.info("  Mail: %s", "configured" if config.smtp.configured else "NOT configured")
    logger.info("  Webhook: %s", "enabled" if config.notifier.enabled else "disabled")

    once = Cadence(args.once) if args.once else None
    return asyncio.run(run_service(config, once))


if __name__ == "__main__":
    sys.exit(main())
