"""Main entry point for the dashboard service."""

import asyncio
import json
import logging
import signal
import sys
from typing import Optional

import click
import structlog
from dotenv import load_dotenv

from pyusd_dashboard.api import DashboardServer
from pyusd_dashboard.config import settings
from pyusd_dashboard.feed import LiveTransferFeed
from pyusd_dashboard.insights import InsightGenerator
from pyusd_dashboard.reports import ReportBuilder
from pyusd_dashboard.rpc_client import ChainReader
from pyusd_dashboard.warehouse import Warehouse, WarehouseError

logger = structlog.get_logger(__name__)


def configure_logging():
    """Configure stdlib logging and structlog from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(message)s',
        handlers=[logging.StreamHandler()]
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class DashboardService:
    """Owns the shared clients and runs the API with the live feed."""

    def __init__(self):
        self.reader: Optional[ChainReader] = None
        self.warehouse: Optional[Warehouse] = None
        self.feed: Optional[LiveTransferFeed] = None
        self.server: Optional[DashboardServer] = None
        self.shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services and block until shutdown is requested."""
        logger.info(
            "Starting dashboard service",
            token=settings.token_address,
            rpc_url=settings.rpc_url,
            warehouse_table=settings.warehouse_table,
            http_port=settings.http_port,
            live_feed=settings.feed_enabled,
            ai_enabled=bool(settings.gemini_api_key),
        )

        self.reader = ChainReader()
        await self.reader.connect()
        self.warehouse = Warehouse()
        try:
            await self.warehouse.connect()
        except WarehouseError as e:
            logger.warning("Warehouse unavailable at startup, reports will retry on demand", error=str(e))

        reports = ReportBuilder(self.warehouse, self.reader, InsightGenerator())

        if settings.feed_enabled:
            self.feed = LiveTransferFeed(self.reader)
            await self.feed.start()

        self.server = DashboardServer(self.reader, reports, self.feed)
        await self.server.start()

        try:
            await self.shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        """Stop all services. Safe to call more than once."""
        logger.info("Shutting down services")

        if self.server:
            await self.server.stop()
        if self.feed:
            await self.feed.stop()
        if self.warehouse:
            await self.warehouse.disconnect()
        if self.reader:
            await self.reader.close()

    def handle_signal(self):
        """Handle shutdown signals."""
        logger.info("Received shutdown signal")
        self.shutdown_event.set()

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.handle_signal)
        await self.start()


async def take_snapshot(count: int) -> list:
    """Backfill a feed once and return its transfers as dicts."""
    async with ChainReader() as reader:
        feed = LiveTransferFeed(reader, size=count)
        await feed.backfill()
        await feed.stop()
        return [t.to_dict() for t in feed.snapshot()]


@click.group()
def cli():
    """Stablecoin analytics dashboard service."""
    load_dotenv()
    configure_logging()


@cli.command()
@click.option("--port", type=int, help="HTTP port to listen on")
@click.option("--no-feed", is_flag=True, help="Do not run the live transfer feed")
def serve(port: Optional[int], no_feed: bool):
    """Run the HTTP API together with the live transfer feed."""
    if port is not None:
        settings.http_port = port
    if no_feed:
        settings.feed_enabled = False

    service = DashboardService()
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


@cli.command()
@click.option("--count", type=click.IntRange(1, 50), default=20, show_default=True,
              help="Number of recent transfers to collect")
def snapshot(count: int):
    """Print the most recent transfers as JSON and exit."""
    try:
        transfers = asyncio.run(take_snapshot(count))
    except Exception as e:
        logger.error("Snapshot failed", error=str(e))
        sys.exit(1)
    click.echo(json.dumps(transfers, indent=2))


if __name__ == "__main__":
    cli()
