"""Report builders behind the dashboard endpoints.

Each builder gathers its independent warehouse queries concurrently, shapes
the rows through ``analytics`` and returns a JSON-ready dict. Errors
propagate to the caller, which decides on the degraded response.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from eth_utils import to_checksum_address

from pyusd_dashboard import analytics, queries
from pyusd_dashboard.config import settings
from pyusd_dashboard.insights import InsightGenerator
from pyusd_dashboard.models import (
    AddressCountRow, AddressStatsRow, BlockTransferRow, DailyVolumeRow, FirstTransactionRow,
    HolderBalanceRow, HolderCountRow, MarketHourRow, MarketSnapshot, MevDailyRow, MevMonthlyRow,
    PeriodChangeRow, SupplyHistoryRow, SupplyTotalsRow, TotalSupplyRow, VolumeSummaryRow, WalletStats,
    format_timestamp
)
from pyusd_dashboard.rpc_client import ChainReader
from pyusd_dashboard.warehouse import Warehouse, WarehouseError

logger = structlog.get_logger(__name__)

VOLUME_PERIODS = {"24h": 1, "7d": 7, "30d": 30, "3months": 90}
DEFAULT_VOLUME_PERIOD = "3months"

MEV_HISTORY_DAYS = 365
MEV_WEEK_DAYS = 7


def _require(row, query_name: str):
    if row is None:
        raise WarehouseError(f"{query_name} query returned no rows")
    return row


class ReportBuilder:
    """Builds every warehouse- and chain-backed report for one token."""

    def __init__(
        self,
        warehouse: Warehouse,
        reader: ChainReader,
        insights: InsightGenerator,
        token_address: str = None,
        decimals: int = None,
        whale_threshold: int = None,
        sandwich_min: int = None,
        frontrun_tolerance: float = None,
        mev_recent_limit: int = None,
    ):
        self.warehouse = warehouse
        self.reader = reader
        self.insights = insights
        self.token_address = token_address or settings.token_address
        self.decimals = settings.token_decimals if decimals is None else decimals
        self.whale_threshold = whale_threshold or settings.whale_threshold
        self.sandwich_min = sandwich_min or settings.sandwich_min_transfers
        self.frontrun_tolerance = frontrun_tolerance or settings.frontrun_tolerance
        self.mev_recent_limit = mev_recent_limit or settings.mev_recent_limit

    def _params(self, **extra) -> Dict[str, Any]:
        # Warehouse addresses are stored lowercase
        return {"token": self.token_address.lower(), **extra}

    def _amount(self, raw) -> float:
        return analytics.display_amount(raw, self.decimals)

    async def holders(self, limit: int = 5) -> Dict[str, Any]:
        """Top holders with their share of supply, plus the holder count."""
        zero = {"zero_address": queries.ZERO_ADDRESS}
        top, supply, count = await asyncio.gather(
            self.warehouse.fetch(HolderBalanceRow, queries.TOP_HOLDERS, self._params(limit=limit, **zero)),
            self.warehouse.fetch_one(TotalSupplyRow, queries.TOTAL_SUPPLY, self._params(**zero)),
            self.warehouse.fetch_one(HolderCountRow, queries.HOLDER_COUNT, self._params(**zero)),
        )
        supply = _require(supply, "total supply")
        count = _require(count, "holder count")

        return {
            "holders": analytics.holder_distribution(top, supply.total_supply, self.decimals),
            "totalHolders": count.holder_count,
        }

    def _period_rows(self, rows):
        return [
            {
                "period": row.period,
                "avg_daily_change": self._amount(row.avg_daily_change),
                "total_change": self._amount(row.total_change),
            }
            for row in rows
        ]

    async def token_supply(self) -> Dict[str, Any]:
        """Minted, burned and circulating supply with daily, monthly and yearly series."""
        params = self._params(zero_address=queries.ZERO_ADDRESS)
        totals, history, monthly, yearly = await asyncio.gather(
            self.warehouse.fetch_one(SupplyTotalsRow, queries.SUPPLY_TOTALS, params),
            self.warehouse.fetch(SupplyHistoryRow, queries.SUPPLY_HISTORY, params),
            self.warehouse.fetch(PeriodChangeRow, queries.MONTHLY_SUPPLY, params),
            self.warehouse.fetch(PeriodChangeRow, queries.YEARLY_SUPPLY, params),
        )
        totals = _require(totals, "supply totals")

        monthly_avg = self._period_rows(monthly)
        yearly_avg = self._period_rows(yearly)

        return {
            "current_supply": self._amount(totals.current_supply),
            "total_minted": self._amount(totals.total_minted),
            "total_burned": self._amount(totals.total_burned),
            "supply_history": [
                {
                    "date": row.formatted_date,
                    "change": self._amount(row.daily_change),
                    "total": self._amount(row.cumulative_supply),
                }
                for row in history
            ],
            "monthly_avg": monthly_avg,
            "yearly_avg": yearly_avg,
            "current_month_avg": monthly_avg[0] if monthly_avg else None,
            "current_year_avg": yearly_avg[0] if yearly_avg else None,
        }

    async def transaction_volume(self, period: Optional[str] = None) -> Dict[str, Any]:
        """Daily volume for a period plus 24h/7d/30d totals with percentage change.

        Unknown periods fall back to three months.
        """
        if period not in VOLUME_PERIODS:
            period = DEFAULT_VOLUME_PERIOD

        daily, summary = await asyncio.gather(
            self.warehouse.fetch(DailyVolumeRow, queries.DAILY_VOLUME, self._params(days=VOLUME_PERIODS[period])),
            self.warehouse.fetch_one(VolumeSummaryRow, queries.VOLUME_SUMMARY, self._params()),
        )
        summary = _require(summary, "volume summary")

        def change(current, previous) -> float:
            return analytics.round_display(analytics.pct_change(current, previous), 1)

        return {
            "period": period,
            "data": [{"date": row.formatted_date, "volume": self._amount(row.volume)} for row in daily],
            "summary": {
                "volume_24h": self._amount(summary.volume_24h),
                "percent_change_24h": change(summary.volume_24h, summary.prev_volume_24h),
                "volume_7d": self._amount(summary.volume_7d),
                "percent_change_7d": change(summary.volume_7d, summary.prev_volume_7d),
                "volume_30d": self._amount(summary.volume_30d),
                "percent_change_30d": change(summary.volume_30d, summary.prev_volume_30d),
            },
        }

    async def mev(self) -> Dict[str, Any]:
        """MEV-like activity: monthly and weekly series, recent flagged blocks, risk score and insights."""
        heuristics = {
            "sandwich_min": self.sandwich_min,
            "frontrun_tolerance": self.frontrun_tolerance,
        }
        monthly, daily, recent_rows = await asyncio.gather(
            self.warehouse.fetch(MevMonthlyRow, queries.MEV_MONTHLY, self._params(days=MEV_HISTORY_DAYS, **heuristics)),
            self.warehouse.fetch(MevDailyRow, queries.MEV_DAILY, self._params(days=MEV_WEEK_DAYS, **heuristics)),
            self.warehouse.fetch(BlockTransferRow, queries.RECENT_BLOCK_TRANSFERS, self._params()),
        )

        recent_activities, recent_stats = analytics.recent_mev_summary(
            recent_rows,
            self.sandwich_min,
            self.frontrun_tolerance,
            self.mev_recent_limit,
            self.decimals,
        )
        moving_averages = analytics.mev_moving_averages(daily, self.decimals)
        risk_score = analytics.mev_risk_score(
            recent_stats["sandwich_blocks_24h"],
            recent_stats["frontrun_blocks_24h"],
            recent_stats["total_blocks_24h"],
            analytics.anomaly_ratios(monthly),
        )
        logger.info(
            "MEV activity classified",
            risk_score=risk_score,
            flagged_blocks=len(recent_activities),
            **recent_stats,
        )

        monthly_trends = [
            {
                "month": row.month,
                "total_blocks": row.total_blocks,
                "total_transactions": row.total_transactions,
                "sandwich_blocks": row.sandwich_blocks,
                "frontrun_blocks": row.frontrun_blocks,
                "volume": self._amount(row.total_volume),
            }
            for row in monthly
        ]

        insights = await self.insights.mev_insights(recent_stats, risk_score, monthly_trends, moving_averages)

        return {
            "risk_score": risk_score,
            "insights": insights,
            "last_week_activity": [
                {
                    "date": row.activity_date.isoformat(),
                    "sandwich_blocks": row.sandwich_blocks,
                    "frontrun_blocks": row.frontrun_blocks,
                    "total_blocks": row.total_blocks,
                    "volume": self._amount(row.total_volume),
                }
                for row in daily
            ],
            "monthly_trends": monthly_trends,
            "moving_averages": moving_averages,
            "recent_activities": recent_activities,
            "recent_stats": recent_stats,
        }

    def _snapshot(self, row: MarketHourRow) -> MarketSnapshot:
        return MarketSnapshot(
            timestamp=format_timestamp(row.hour),
            transaction_count=row.tx_count,
            volume=self._amount(row.volume),
            unique_senders=row.unique_senders,
            unique_receivers=row.unique_receivers,
            max_transfer=self._amount(row.max_transfer),
            whale_transactions=row.whale_txs,
            whale_volume=self._amount(row.whale_volume),
            accumulation_wallets=row.accumulation_wallets,
            distribution_wallets=row.distribution_wallets,
        )

    async def predictions(self) -> Dict[str, Any]:
        """Market movement predictions from the last seven days of hourly activity."""
        whale_minor_units = int(Decimal(self.whale_threshold).scaleb(self.decimals))
        rows = await self.warehouse.fetch(
            MarketHourRow, queries.MARKET_PATTERNS, self._params(whale_threshold=whale_minor_units)
        )
        snapshots = [self._snapshot(row) for row in rows]
        predictions = await self.insights.market_predictions(snapshots)

        return {
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
            "predictions": [p.model_dump(by_alias=True) for p in predictions],
            "marketData": snapshots[0].model_dump(by_alias=True) if snapshots else None,
        }

    async def address_info(self, address: str) -> Dict[str, Any]:
        """Balance, activity statistics and insights for one wallet.

        Args:
            address: A well-formed address, validated by the caller
        """
        raw_balance = await self.reader.balance_of(self.token_address, to_checksum_address(address))
        balance = self._amount(raw_balance)

        params = self._params(address=address.lower())
        count, first, stats_row = await asyncio.gather(
            self.warehouse.fetch_one(AddressCountRow, queries.ADDRESS_TX_COUNT, params),
            self.warehouse.fetch_one(FirstTransactionRow, queries.ADDRESS_FIRST_TX, params),
            self.warehouse.fetch_one(AddressStatsRow, queries.ADDRESS_TX_STATS, params),
        )
        count = _require(count, "address transaction count")
        first = first or FirstTransactionRow()
        stats_row = stats_row or AddressStatsRow()
        logger.debug("Address activity loaded", address=address, transactions=count.tx_count)

        stats = WalletStats(
            total_transactions=count.tx_count,
            first_transaction_date=format_timestamp(first.first_tx_date) if first.first_tx_date else None,
            send_transactions=stats_row.send_txs,
            receive_transactions=stats_row.receive_txs,
            total_sent=self._amount(stats_row.total_sent),
            total_received=self._amount(stats_row.total_received),
            max_sent=self._amount(stats_row.max_sent),
            max_received=self._amount(stats_row.max_received),
            avg_sent=self._amount(stats_row.avg_sent),
            avg_received=self._amount(stats_row.avg_received),
        )

        insights = await self.insights.wallet_insights(address, balance, stats)

        return {
            "address": address,
            "balance": balance,
            "stats": stats.model_dump(),
            "ai_insights": insights,
        }

    async def token_info(self) -> Dict[str, Any]:
        """ERC-20 metadata read from the chain."""
        info = await self.reader.token_info(self.token_address)
        return {
            "address": self.token_address,
            "name": info.name,
            "symbol": info.symbol,
            "decimals": info.decimals,
            "totalSupply": format(info.total_supply, "f"),
        }

    async def gas_stats(self) -> Dict[str, Any]:
        """Current gas price and EIP-1559 fee suggestions in gwei."""
        fees = await self.reader.fee_estimates()
        return fees.to_dict()
