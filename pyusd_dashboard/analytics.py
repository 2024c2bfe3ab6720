"""Derived metrics over warehouse and chain results.

Everything here is pure and synchronous. Amount inputs are raw minor units
unless noted; scaling and display rounding happen once, at the boundary,
through ``display_amount``.
"""

from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pyusd_dashboard.models import BlockTransferRow, HolderBalanceRow, MarketSnapshot, MevDailyRow

HUNDRED = Decimal(100)

SANDWICH = "SANDWICH"
FRONTRUN = "FRONTRUN"
NORMAL = "NORMAL"

# MEV risk score adjustments, applied to a neutral baseline
RISK_BASELINE = 50
SANDWICH_STEPS = ((0.3, 25), (0.1, 10))
SANDWICH_QUIET = (0.05, -20)
FRONTRUN_STEPS = ((0.2, 20), (0.05, 10))
FRONTRUN_QUIET = (0.01, -15)
TREND_THRESHOLD = 20.0
TREND_STEP = 20


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_display(value: Any, places: int = 2) -> float:
    """Round half-up to ``places`` decimals for presentation."""
    quantum = Decimal(1).scaleb(-places)
    return float(_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def to_tokens(raw: Any, decimals: int) -> Decimal:
    """Scale a minor-unit amount to whole tokens without rounding."""
    return _decimal(raw).scaleb(-decimals)


def display_amount(raw: Any, decimals: int) -> float:
    """Scale a minor-unit amount and round it for display."""
    return round_display(to_tokens(raw, decimals))


def clamp(value, low, high):
    return max(low, min(high, value))


def pct_change(current: Any, previous: Any) -> float:
    """Signed percentage change from ``previous`` to ``current``.

    Returns 0 when there is no positive baseline. Callers should read that
    as "no baseline", not "no change".
    """
    previous = float(previous or 0)
    if previous <= 0:
        return 0.0
    return (float(current or 0) - previous) / previous * 100


def ratio(part: Any, whole: Any) -> float:
    """``part / whole`` with a missing or non-positive denominator giving 0."""
    whole = float(whole or 0)
    if whole <= 0:
        return 0.0
    return float(part or 0) / whole


def moving_average(values: Sequence[Any], window: int = 7) -> List[float]:
    """Trailing arithmetic means; one value per point that has a full window."""
    points = [float(v or 0) for v in values]
    return [
        sum(points[i - window + 1:i + 1]) / window
        for i in range(window - 1, len(points))
    ]


def mev_moving_averages(days: Sequence[MevDailyRow], decimals: int, window: int = 7) -> List[Dict[str, Any]]:
    """Moving averages of daily sandwich/frontrun counts and volume."""
    sandwich = moving_average([d.sandwich_blocks for d in days], window)
    frontrun = moving_average([d.frontrun_blocks for d in days], window)
    volume = moving_average([d.total_volume for d in days], window)

    return [
        {
            "date": days[i + window - 1].activity_date.isoformat(),
            "avg_sandwich_count": round_display(sandwich[i]),
            "avg_frontrun_count": round_display(frontrun[i]),
            "avg_volume": display_amount(volume[i], decimals),
        }
        for i in range(len(sandwich))
    ]


# ---------------------------------------------------------------------------
# Holder concentration
# ---------------------------------------------------------------------------

def holder_percentage(balance: Any, total_supply: Any) -> Decimal:
    """Share of supply held, in percent, rounded to 2 decimals."""
    total = _decimal(total_supply)
    if total <= 0:
        return Decimal("0.00")
    share = _decimal(balance) / total * HUNDRED
    return clamp(share, Decimal(0), HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def others_percentage(percentages: Iterable[Any]) -> Decimal:
    """The remainder that makes the reported shares sum to 100."""
    remainder = HUNDRED - sum((_decimal(p) for p in percentages), Decimal(0))
    return clamp(remainder, Decimal(0), HUNDRED)


def holder_distribution(
    holders: Sequence[HolderBalanceRow],
    total_supply: Any,
    decimals: int,
) -> List[Dict[str, Any]]:
    """Top holders plus a synthesized "Others" row.

    Args:
        holders: Top holder balances in minor units
        total_supply: Circulating supply in minor units
        decimals: Token decimal count

    Returns:
        Rows of ``address``, ``balance`` (whole tokens) and ``percentage``
    """
    percentages = [holder_percentage(holder.balance, total_supply) for holder in holders]

    # Rounding can push the listed shares past 100; take the excess off the largest row
    excess = sum(percentages, Decimal(0)) - HUNDRED
    if excess > 0:
        largest = max(range(len(percentages)), key=lambda i: percentages[i])
        percentages[largest] -= excess

    rows = [
        {
            "address": holder.address,
            "balance": display_amount(holder.balance, decimals),
            "percentage": float(percentage),
        }
        for holder, percentage in zip(holders, percentages)
    ]

    others = others_percentage(percentages)
    rows.append({
        "address": "Others",
        "balance": display_amount(_decimal(total_supply) * others / HUNDRED, decimals),
        "percentage": float(others),
    })
    return rows


# ---------------------------------------------------------------------------
# MEV heuristics
# ---------------------------------------------------------------------------

def has_opposite_pair(transfers: Sequence[BlockTransferRow], tolerance: float) -> bool:
    """True if some transfer is mirrored by a near-equal transfer the other way."""
    tolerance = _decimal(tolerance)
    for first in transfers:
        if first.amount <= 0:
            continue
        for second in transfers:
            if second is first:
                continue
            if (second.from_address.lower() == first.to_address.lower()
                    and second.to_address.lower() == first.from_address.lower()
                    and abs(second.amount - first.amount) / first.amount < tolerance):
                return True
    return False


def classify_block(transfers: Sequence[BlockTransferRow], sandwich_min: int, tolerance: float) -> str:
    """Label one block's token transfers as SANDWICH, FRONTRUN or NORMAL."""
    if len(transfers) >= sandwich_min:
        return SANDWICH
    if has_opposite_pair(transfers, tolerance):
        return FRONTRUN
    return NORMAL


def group_by_block(rows: Iterable[BlockTransferRow]) -> "OrderedDict[int, List[BlockTransferRow]]":
    """Group transfers by block, newest block first."""
    blocks: Dict[int, List[BlockTransferRow]] = {}
    for row in rows:
        blocks.setdefault(row.block_number, []).append(row)
    return OrderedDict(sorted(blocks.items(), key=lambda item: item[0], reverse=True))


def recent_mev_summary(
    rows: Iterable[BlockTransferRow],
    sandwich_min: int,
    tolerance: float,
    limit: int,
    decimals: int,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    """Classify recent blocks.

    Returns:
        The newest flagged blocks (at most ``limit``) and 24h block counts
    """
    activities = []
    stats = {"sandwich_blocks_24h": 0, "frontrun_blocks_24h": 0, "total_blocks_24h": 0}

    for block_number, transfers in group_by_block(rows).items():
        mev_type = classify_block(transfers, sandwich_min, tolerance)
        stats["total_blocks_24h"] += 1
        if mev_type == NORMAL:
            continue

        key = "sandwich_blocks_24h" if mev_type == SANDWICH else "frontrun_blocks_24h"
        stats[key] += 1

        if len(activities) < limit:
            activities.append({
                "block_number": block_number,
                "timestamp": min(t.block_timestamp for t in transfers).isoformat(),
                "transaction_count": len(transfers),
                "transactions": [
                    {
                        "transaction_hash": t.transaction_hash,
                        "from_address": t.from_address,
                        "to_address": t.to_address,
                        "amount": display_amount(t.amount, decimals),
                    }
                    for t in transfers
                ],
                "mev_type": mev_type,
            })

    return activities, stats


def anomaly_ratios(periods: Iterable[Any]) -> List[float]:
    """Share of flagged blocks per period (rows with sandwich/frontrun/total counts)."""
    return [
        ratio(p.sandwich_blocks + p.frontrun_blocks, p.total_blocks)
        for p in periods
    ]


def half_trend(values: Sequence[float]) -> float:
    """Percentage change between the means of the first and second halves."""
    if len(values) < 2:
        return 0.0
    middle = len(values) // 2
    first, second = values[:middle], values[middle:]
    return pct_change(sum(second) / len(second), sum(first) / len(first))


def _step(value: float, steps, quiet) -> int:
    for threshold, points in steps:
        if value > threshold:
            return points
    quiet_threshold, quiet_points = quiet
    if value < quiet_threshold:
        return quiet_points
    return 0


def mev_risk_score(
    sandwich_blocks: int,
    frontrun_blocks: int,
    total_blocks: int,
    trend_ratios: Sequence[float] = (),
) -> int:
    """Heuristic MEV risk on a 0-100 scale.

    Args:
        sandwich_blocks: Sandwich-like blocks in the last 24 hours
        frontrun_blocks: Frontrun-like blocks in the last 24 hours
        total_blocks: Blocks with token activity in the last 24 hours
        trend_ratios: Flagged-block ratios of a trailing window, oldest first

    Returns:
        Score clamped to [0, 100]
    """
    score = RISK_BASELINE
    score += _step(ratio(sandwich_blocks, total_blocks), SANDWICH_STEPS, SANDWICH_QUIET)
    score += _step(ratio(frontrun_blocks, total_blocks), FRONTRUN_STEPS, FRONTRUN_QUIET)

    trend = half_trend(list(trend_ratios))
    if trend > TREND_THRESHOLD:
        score += TREND_STEP
    elif trend < -TREND_THRESHOLD:
        score -= TREND_STEP

    return int(clamp(score, 0, 100))


# ---------------------------------------------------------------------------
# Market patterns
# ---------------------------------------------------------------------------

def is_whale(amount: Any, threshold: Any) -> bool:
    return _decimal(amount) >= _decimal(threshold)


def trend_description(current: Any, previous: Any) -> str:
    change = pct_change(current, previous)
    if change > 20:
        return "Sharp increase"
    if change > 5:
        return "Moderate increase"
    if change < -20:
        return "Sharp decrease"
    if change < -5:
        return "Moderate decrease"
    return "Stable"


def market_trends(snapshots: Sequence[MarketSnapshot]) -> Dict[str, str]:
    """Trend labels between the two most recent hours (newest first)."""
    if len(snapshots) < 2:
        return {
            "volumeTrend": "Insufficient data",
            "whaleActivityTrend": "Insufficient data",
            "networkActivityTrend": "Insufficient data",
        }

    current, previous = snapshots[0], snapshots[1]
    return {
        "volumeTrend": trend_description(current.volume, previous.volume),
        "whaleActivityTrend": trend_description(current.whale_transactions, previous.whale_transactions),
        "networkActivityTrend": trend_description(
            current.unique_senders + current.unique_receivers,
            previous.unique_senders + previous.unique_receivers,
        ),
    }


def hourly_averages(snapshots: Sequence[MarketSnapshot]) -> Dict[str, int]:
    count = len(snapshots)
    if not count:
        return {"avgTxCount": 0, "avgVolume": 0, "avgWhaleTx": 0}
    return {
        "avgTxCount": round(sum(s.transaction_count for s in snapshots) / count),
        "avgVolume": round(sum(s.volume for s in snapshots) / count),
        "avgWhaleTx": round(sum(s.whale_transactions for s in snapshots) / count),
    }


def wallet_activity_days(first_transaction: Optional[Any], as_of: Any) -> int:
    """Whole days (rounded up) since the first transaction, or 0 if unknown."""
    if first_transaction is None:
        return 0
    seconds = (as_of - first_transaction).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))
