"""Live transfer feed for the tracked token."""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from pyusd_dashboard.config import settings
from pyusd_dashboard.events import TRANSFER_TOPIC, parse_transfer_log
from pyusd_dashboard.models import RawLog, Transfer, decode
from pyusd_dashboard.rpc_client import ChainReader
from pyusd_dashboard.telemetry import (
    feed_refresh_cycles, feed_size, feed_transfers_ingested, feed_watermark
)

logger = structlog.get_logger(__name__)

MAX_FEED_SIZE = 50


class FeedState(str, Enum):
    """Monitoring mode of the feed."""
    UNINITIALIZED = "uninitialized"
    FILTER_ACTIVE = "filter_active"
    POLLING_FALLBACK = "polling_fallback"
    STOPPED = "stopped"


def merge_transfers(
    existing: Sequence[Transfer],
    incoming: Sequence[Transfer],
    limit: int,
) -> Tuple[Transfer, ...]:
    """Merge transfers by hash, newest block first, truncated to ``limit``.

    Incoming entries replace existing ones with the same transaction hash.
    """
    by_hash: Dict[str, Transfer] = {t.hash: t for t in existing}
    for transfer in incoming:
        by_hash[transfer.hash] = transfer

    ordered = sorted(
        by_hash.values(),
        key=lambda t: (t.block_number, t.log_index),
        reverse=True,
    )
    return tuple(ordered[:limit])


class LiveTransferFeed:
    """Bounded, deduplicated, most-recent-first list of token transfers.

    Tracks new Transfer events through a server-side log filter, falling
    back to chunked eth_getLogs polling when the node refuses or loses the
    filter. The active refresh cycle is the only writer of the list;
    readers get immutable snapshots.
    """

    def __init__(
        self,
        reader: ChainReader,
        token_address: str = None,
        decimals: int = None,
        size: int = None,
        filter_interval: float = None,
        poll_interval: float = None,
        refresh_timeout: float = None,
        backfill_attempts: int = None,
        max_catchup_blocks: int = None,
    ):
        self.reader = reader
        self.token_address = token_address or settings.token_address
        self.decimals = settings.token_decimals if decimals is None else decimals
        cap = min(settings.feed_max_size, MAX_FEED_SIZE)
        self.size = max(1, min(size or settings.feed_size, cap))
        self.filter_interval = filter_interval or settings.feed_filter_interval
        self.poll_interval = poll_interval or settings.feed_poll_interval
        self.refresh_timeout = refresh_timeout or settings.feed_refresh_timeout
        self.backfill_attempts = backfill_attempts or settings.feed_backfill_attempts
        self.max_catchup_blocks = max_catchup_blocks or settings.feed_max_catchup_blocks

        self.state = FeedState.UNINITIALIZED
        self.watermark = 0
        self.filter_id: Optional[str] = None
        self.last_refresh_at: Optional[datetime] = None

        self._transfers: Tuple[Transfer, ...] = ()
        self._refresh_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        """Seconds to wait between refresh cycles in the current mode."""
        if self.state == FeedState.FILTER_ACTIVE:
            return self.filter_interval
        return self.poll_interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def live(self) -> bool:
        """True once a backfill or refresh has succeeded and the feed is not stopped."""
        return self.last_refresh_at is not None and self.state != FeedState.STOPPED

    def snapshot(self, count: Optional[int] = None) -> List[Transfer]:
        """Return the most recent transfers, newest block first."""
        transfers = self._transfers
        if count is not None:
            transfers = transfers[:max(0, count)]
        return list(transfers)

    def status(self) -> Dict[str, Any]:
        """Describe the feed for health and status endpoints."""
        return {
            "state": self.state.value,
            "running": self.running,
            "watermark": self.watermark,
            "size": len(self._transfers),
            "capacity": self.size,
            "filter_installed": self.filter_id is not None,
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
        }

    async def start(self):
        """Start the background refresh task."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="live-transfer-feed")

    async def stop(self):
        """Cancel the refresh task and release the filter.

        Safe to call repeatedly and after the node connection is gone.
        """
        self._stop_event.set()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Live feed task ended with error", error=str(e))

        await self._release_filter()

        if self.state != FeedState.STOPPED:
            self.state = FeedState.STOPPED
            logger.info("Live transfer feed stopped", watermark=self.watermark)

    async def _run(self):
        logger.info(
            "Starting live transfer feed",
            token=self.token_address,
            size=self.size,
        )

        await self.subscribe()
        await self.backfill()

        while not self._stop_event.is_set():
            await self.refresh()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def subscribe(self) -> bool:
        """Install the Transfer log filter, or switch to polling on failure."""
        try:
            self.filter_id = await self.reader.new_filter(self.token_address, [TRANSFER_TOPIC])
        except Exception as e:
            self.filter_id = None
            self.state = FeedState.POLLING_FALLBACK
            logger.warning("Filter subscription unavailable, using polling", error=str(e))
            return False

        self.state = FeedState.FILTER_ACTIVE
        logger.info("Filter-based event monitoring set up", filter_id=self.filter_id)
        return True

    async def backfill(self) -> int:
        """Seed the feed by scanning backwards from the chain head.

        Scans provider-sized windows until the feed is full or the attempt
        budget runs out. Never raises.

        Returns:
            Number of transfers merged
        """
        async with self._refresh_lock:
            try:
                head = await self.reader.current_block_number()
            except Exception as e:
                logger.error("Backfill could not read chain head", error=str(e))
                return 0

            logs: List[Dict[str, Any]] = []
            hashes = set()
            to_block = head
            attempts = 0
            while len(hashes) < self.size and attempts < self.backfill_attempts and to_block >= 0:
                from_block = max(0, to_block - self.reader.max_block_range + 1)
                batch = await self.reader.get_logs_in_range(
                    self.token_address, [TRANSFER_TOPIC], from_block, to_block
                )
                logs.extend(batch)
                hashes.update(log.get("transactionHash") for log in batch)
                to_block = from_block - 1
                attempts += 1

            added = await self._ingest(logs)
            self._advance_watermark(head)
            self.last_refresh_at = datetime.now(timezone.utc)

        logger.info("Backfill complete", transfers=added, head=head, windows=attempts)
        return added

    async def refresh(self) -> int:
        """Run one refresh cycle.

        A cycle already in progress suppresses this one. Errors are logged
        and count as zero new events.

        Returns:
            Number of transfers merged this cycle
        """
        if self.state == FeedState.STOPPED:
            return 0

        if self._refresh_lock.locked():
            feed_refresh_cycles.labels("skipped").inc()
            logger.debug("Refresh already in progress, skipping")
            return 0

        async with self._refresh_lock:
            try:
                added = await asyncio.wait_for(self._refresh_once(), timeout=self.refresh_timeout)
            except asyncio.TimeoutError:
                feed_refresh_cycles.labels("timeout").inc()
                logger.error("Refresh cycle exceeded maximum duration", timeout=self.refresh_timeout)
                return 0
            except Exception as e:
                feed_refresh_cycles.labels("error").inc()
                logger.error("Refresh cycle failed", state=self.state.value, error=str(e))
                return 0

        feed_refresh_cycles.labels("ok").inc()
        self.last_refresh_at = datetime.now(timezone.utc)
        return added

    async def _refresh_once(self) -> int:
        if self.state == FeedState.UNINITIALIZED:
            await self.subscribe()

        head = None
        if self.state == FeedState.FILTER_ACTIVE:
            logs, head = await self._pull_filter_changes()
        else:
            logs, head = await self._poll_logs()

        added = await self._ingest(logs)
        if head is not None:
            self._advance_watermark(head)
        return added

    async def _pull_filter_changes(self) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        try:
            return await self.reader.get_filter_changes(self.filter_id), None
        except Exception as e:
            logger.warning("Filter poll failed, resubscribing", filter_id=self.filter_id, error=str(e))

        await self._release_filter()
        if not await self.subscribe():
            return [], None

        # Cover blocks that passed while no filter was installed
        return await self._poll_logs()

    async def _poll_logs(self) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        head = await self.reader.current_block_number()
        start = self.watermark + 1
        if head < start:
            return [], None

        if head - start + 1 > self.max_catchup_blocks:
            resumed = head - self.max_catchup_blocks + 1
            logger.warning("Catch-up span capped", skipped_from=start, resumed_at=resumed)
            start = resumed

        logs = await self.reader.get_logs_in_range(
            self.token_address, [TRANSFER_TOPIC], start, head
        )
        return logs, head

    async def _ingest(self, logs: List[Dict[str, Any]]) -> int:
        """Decode logs and merge them into the list."""
        if not logs:
            return 0

        timestamps: Dict[int, int] = {}
        parsed: List[Transfer] = []
        for log in logs:
            try:
                raw = decode(RawLog, log)
                if raw.removed:
                    continue
                if raw.block_number not in timestamps:
                    block = await self.reader.get_block(raw.block_number)
                    timestamps[raw.block_number] = block.timestamp
                parsed.append(parse_transfer_log(raw, timestamps[raw.block_number], self.decimals))
            except Exception as e:
                logger.error(
                    "Failed to process transfer log",
                    transaction_hash=log.get("transactionHash") if isinstance(log, dict) else None,
                    error=str(e)
                )

        if not parsed:
            return 0

        self._transfers = merge_transfers(self._transfers, parsed, self.size)
        self._advance_watermark(max(t.block_number for t in parsed))

        feed_transfers_ingested.inc(len(parsed))
        feed_size.set(len(self._transfers))
        logger.info("Merged transfer events", received=len(parsed), watermark=self.watermark)
        return len(parsed)

    def _advance_watermark(self, block_number: int):
        if block_number > self.watermark:
            self.watermark = block_number
            feed_watermark.set(block_number)

    async def _release_filter(self):
        filter_id, self.filter_id = self.filter_id, None
        if not filter_id:
            return
        try:
            await self.reader.uninstall_filter(filter_id)
            logger.debug("Filter uninstalled", filter_id=filter_id)
        except Exception as e:
            logger.warning("Failed to uninstall filter", filter_id=filter_id, error=str(e))
