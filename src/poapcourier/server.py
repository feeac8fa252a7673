"""
Minimal HTTP server for the running service.

GET /metrics serves generate_latest(registry), GET /healthz serves the
orchestrator health JSON, POST /trigger starts a batch run.

When a trigger secret is configured, /trigger requires X-Webhook-Signature
set to the hex HMAC-SHA256 of the raw request body.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import generate_latest

from poapcourier.delivery.notifier import SIGNATURE_HEADER, sign_body

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

# Type alias for aiohttp handler
_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Type alias for health info callback
HealthFn = Callable[[], dict[str, Any]]

# Starts a batch run; return value is ignored
TriggerFn = Callable[[], object]


def _json_response(data: dict[str, Any], status: int = 200) -> web.Response:
    return web.Response(body=orjson.dumps(data), status=status, content_type="application/json")


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_body(secret, body), signature)


def _make_metrics_handler(registry: CollectorRegistry) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(
            body=generate_latest(registry),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(health_fn: HealthFn | None) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        info = health_fn() if health_fn is not None else {"status": "ok"}
        return _json_response(info)

    return handler


def _make_trigger_handler(trigger_fn: TriggerFn, secret: str) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        body = await request.read()
        if secret and not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("Rejected trigger with bad signature", extra={"remote": request.remote})
            return _json_response({"error": "invalid signature"}, status=401)

        trigger_fn()
        return _json_response({"status": "triggered"}, status=202)

    return handler


def create_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    trigger_fn: TriggerFn | None = None,
    trigger_secret: str = "",
) -> web.Application:
    """
    Create the aiohttp Application.

    Args:
        registry: Prometheus CollectorRegistry to serve.
        health_fn: Callback for /healthz.
        trigger_fn: Callback for POST /trigger. The route is absent when None.
        trigger_secret: HMAC secret for /trigger; empty disables the check.
    """
    app = web.Application()
    app.router.add_get("/metrics", _make_metrics_handler(registry))
    app.router.add_get("/healthz", _make_healthz_handler(health_fn))
    if trigger_fn is not None:
        app.router.add_post("/trigger", _make_trigger_handler(trigger_fn, trigger_secret))
    return app


async def start_server(
    app: web.Application,
    host: str = "0.0.0.0",
    port: int = 9090,
) -> web.AppRunner:
    """Start serving app. Call stop_server() with the returned runner on shutdown."""
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server started on http://%s:%d", host, port)
    return runner


async def stop_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("HTTP server stopped")
