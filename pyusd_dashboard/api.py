"""HTTP API for the dashboard, plus health and metrics endpoints."""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from aiohttp import web
from eth_utils import is_address, to_checksum_address
from prometheus_client import REGISTRY, generate_latest

from pyusd_dashboard.config import settings
from pyusd_dashboard.fallbacks import fallback
from pyusd_dashboard.feed import MAX_FEED_SIZE, LiveTransferFeed
from pyusd_dashboard.reports import ReportBuilder
from pyusd_dashboard.rpc_client import ChainReader
from pyusd_dashboard.telemetry import http_responses

logger = structlog.get_logger(__name__)

DEFAULT_TRANSFER_COUNT = 20
DEFAULT_HOLDER_LIMIT = 5
MAX_HOLDER_LIMIT = 100


class BadRequest(ValueError):
    """Raised for malformed query parameters."""
    pass


def _int_param(request: web.Request, name: str, default: int, low: int, high: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise BadRequest(f"{name} must be an integer")
    if value < low:
        raise BadRequest(f"{name} must be at least {low}")
    return min(value, high)


class DashboardServer:
    """aiohttp application exposing the dashboard reports."""

    def __init__(
        self,
        reader: ChainReader,
        reports: ReportBuilder,
        feed: Optional[LiveTransferFeed] = None,
        host: str = None,
        port: int = None,
    ):
        self.reader = reader
        self.reports = reports
        self.feed = feed
        self.host = host or settings.http_host
        self.port = port or settings.http_port
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self._setup_routes()

    def _json_response(self, route: str, data: Any, status: int = 200) -> web.Response:
        """Create a JSON response with custom serialization."""
        def default_serializer(obj):
            if hasattr(obj, 'isoformat'):
                return obj.isoformat()
            elif isinstance(obj, Decimal):
                return float(obj)
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        http_responses.labels(route, str(status)).inc()
        return web.Response(
            text=json.dumps(data, default=default_serializer),
            content_type='application/json',
            status=status
        )

    def _setup_routes(self):
        """Setup HTTP routes."""
        # Health and monitoring
        self.app.router.add_get("/health", self.health_check)
        self.app.router.add_get("/readiness", self.readiness_check)
        self.app.router.add_get("/metrics", self.metrics)

        # Dashboard data
        self.app.router.add_get("/transfers", self.get_transfers)
        self.app.router.add_get("/holders", self.get_holders)
        self.app.router.add_get("/token-supply", self.get_token_supply)
        self.app.router.add_get("/transaction-volume", self.get_transaction_volume)
        self.app.router.add_get("/mev", self.get_mev)
        self.app.router.add_get("/predictions", self.get_predictions)
        self.app.router.add_get("/address-info", self.get_address_info)
        self.app.router.add_get("/token-info", self.get_token_info)
        self.app.router.add_get("/gas-stats", self.get_gas_stats)

    async def _report(
        self,
        route: str,
        report: str,
        build: Callable[..., Awaitable[Any]],
        *args,
        degraded: Optional[Dict[str, Any]] = None
    ) -> web.Response:
        """Run a report builder, degrading to its static payload on failure."""
        try:
            data = await build(*args)
        except Exception as e:
            logger.error("Report failed, serving fallback", route=route, error=str(e))
            payload = fallback(report, f"Failed to build {report.replace('_', ' ')} report")
            payload.update(degraded or {})
            return self._json_response(route, payload, status=500)
        return self._json_response(route, data)

    async def health_check(self, request):
        """Basic health check endpoint."""
        return web.json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def readiness_check(self, request):
        """Readiness check - verifies the chain node and reports the live feed."""
        checks = {"rpc_node": await self.reader.health_check()}
        feed_status = self.feed.status() if self.feed else None
        if self.feed:
            checks["live_feed"] = feed_status["running"]

        ready = all(checks.values())
        return web.json_response({
            "ready": ready,
            "checks": checks,
            "feed": feed_status,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }, status=200 if ready else 503)

    async def metrics(self, request):
        """Prometheus metrics endpoint."""
        return web.Response(
            body=generate_latest(REGISTRY),
            content_type="text/plain; version=0.0.4",
            charset="utf-8"
        )

    async def get_transfers(self, request):
        """Most recent token transfers from the live feed, newest first."""
        try:
            count = _int_param(request, "count", DEFAULT_TRANSFER_COUNT, 1, MAX_FEED_SIZE)
        except BadRequest as e:
            return self._json_response("transfers", {"error": str(e)}, status=400)

        if self.feed is None or not self.feed.live:
            return self._json_response("transfers", [], status=500)

        return self._json_response("transfers", [t.to_dict() for t in self.feed.snapshot(count)])

    async def get_holders(self, request):
        try:
            limit = _int_param(request, "limit", DEFAULT_HOLDER_LIMIT, 1, MAX_HOLDER_LIMIT)
        except BadRequest as e:
            return self._json_response("holders", {"error": str(e)}, status=400)
        return await self._report("holders", "holders", self.reports.holders, limit)

    async def get_token_supply(self, request):
        return await self._report("token-supply", "token_supply", self.reports.token_supply)

    async def get_transaction_volume(self, request):
        period = request.query.get("period")
        return await self._report(
            "transaction-volume", "transaction_volume", self.reports.transaction_volume, period
        )

    async def get_mev(self, request):
        return await self._report("mev", "mev", self.reports.mev)

    async def get_predictions(self, request):
        return await self._report("predictions", "predictions", self.reports.predictions)

    async def get_address_info(self, request):
        """Balance, statistics and insights for one wallet."""
        address = request.query.get("address", "").strip()
        if not address or not is_address(address):
            return self._json_response("address-info", {"error": "Invalid Ethereum address"}, status=400)
        address = to_checksum_address(address)
        return await self._report(
            "address-info", "address_info", self.reports.address_info, address, degraded={"address": address}
        )

    async def get_token_info(self, request):
        try:
            data = await self.reports.token_info()
        except Exception as e:
            logger.error("Failed to read token metadata", error=str(e))
            return self._json_response("token-info", {"error": "Failed to read token metadata"}, status=500)
        return self._json_response("token-info", data)

    async def get_gas_stats(self, request):
        try:
            data = await self.reports.gas_stats()
        except Exception as e:
            logger.error("Failed to read gas statistics", error=str(e))
            return self._json_response("gas-stats", {"error": "Failed to read gas statistics"}, status=500)
        return self._json_response("gas-stats", data)

    async def start(self):
        """Start the HTTP server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()

        logger.info(
            "Dashboard API started",
            host=self.host,
            port=self.port,
            endpoints=[route.resource.canonical for route in self.app.router.routes()]
        )

    async def stop(self):
        """Stop the HTTP server."""
        runner, self.runner = self.runner, None
        if runner is not None:
            await runner.cleanup()
