"""Generative commentary for wallets, MEV activity and market patterns.

Prompts carry only aggregated figures. When the model is not configured,
fails, times out or answers with nothing usable, a deterministic
rule-based answer is derived from the same figures.
"""

import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import google.generativeai as genai
import structlog
from pydantic import ValidationError

from pyusd_dashboard import analytics
from pyusd_dashboard.config import settings
from pyusd_dashboard.models import MarketSnapshot, Prediction, WalletStats
from pyusd_dashboard.telemetry import insight_fallbacks

logger = structlog.get_logger(__name__)

BULLET_LINE = re.compile(r"^[-*•]\s+(.+)$")
SENTENCE_BREAK = re.compile(r"[.!?]")
JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)

NO_HISTORY_INSIGHT = "This wallet has no {symbol} transaction history."
TYPICAL_WALLET_INSIGHT = "This wallet shows typical {symbol} transaction patterns."


class InsightUnavailable(Exception):
    """Raised when the generative model cannot produce an answer."""
    pass


def parse_bullets(text: str) -> List[str]:
    """Extract insight lines from free-form model output.

    Lines starting with a bullet marker win. Without any, sentences of a
    plausible length are used instead. Returns an empty list when neither
    yields anything.
    """
    bullets = []
    for line in text.splitlines():
        match = BULLET_LINE.match(line.strip())
        if match:
            bullets.append(match.group(1).strip())
    if bullets:
        return bullets

    sentences = (s.strip() for s in SENTENCE_BREAK.split(text))
    return [s for s in sentences if 10 < len(s) < 150]


def parse_predictions(text: str) -> List[Prediction]:
    """Parse a JSON prediction array, keeping only entries that validate."""
    match = JSON_ARRAY.search(text)
    if not match:
        return []
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []

    predictions = []
    for entry in payload:
        try:
            predictions.append(Prediction.model_validate(entry))
        except ValidationError as e:
            logger.debug("Discarding invalid prediction", error=str(e))
    return predictions


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def wallet_fallback_insights(
    balance: float,
    stats: WalletStats,
    as_of: datetime,
    symbol: str = None,
) -> List[str]:
    """Rule-based wallet insights from send/receive ratios and activity rate."""
    symbol = symbol or settings.token_symbol
    insights = []

    if balance > 0:
        if stats.send_transactions == 0 and stats.receive_transactions > 0:
            insights.append(
                f"This appears to be a holding wallet that has only received {symbol} without sending any out."
            )
        elif stats.send_transactions > 0 and stats.receive_transactions > 0:
            sent_ratio = analytics.ratio(stats.total_sent, stats.total_received)
            if sent_ratio < 0.2:
                insights.append(
                    f"This wallet primarily accumulates {symbol}, sending out only a small portion of what it receives."
                )
            elif 0.8 < sent_ratio < 1.2:
                insights.append(
                    f"This wallet shows balanced transaction patterns, with similar amounts of {symbol} "
                    "being received and sent."
                )
            elif sent_ratio > 3:
                insights.append(
                    f"This wallet appears to be distributing {symbol}, sending out significantly more than it receives."
                )

    days = analytics.wallet_activity_days(_parse_timestamp(stats.first_transaction_date), as_of)
    if stats.total_transactions > 0 and days > 0:
        per_day = stats.total_transactions / days
        if per_day > 5:
            insights.append(f"This is a highly active wallet with frequent {symbol} transactions.")
        elif per_day < 0.1:
            insights.append(
                f"This wallet shows infrequent {symbol} activity, with long periods between transactions."
            )

    return insights or [TYPICAL_WALLET_INSIGHT.format(symbol=symbol)]


def mev_fallback_insights(recent_stats: Dict[str, int], risk_score: int, symbol: str = None) -> List[str]:
    """Rule-based MEV commentary from 24h block counts and the risk score."""
    symbol = symbol or settings.token_symbol
    total = recent_stats.get("total_blocks_24h", 0)
    sandwich = recent_stats.get("sandwich_blocks_24h", 0)
    frontrun = recent_stats.get("frontrun_blocks_24h", 0)
    insights = []

    if total == 0:
        insights.append(f"No {symbol} block activity was observed in the last 24 hours.")
    else:
        sandwich_share = analytics.ratio(sandwich, total) * 100
        frontrun_share = analytics.ratio(frontrun, total) * 100
        if sandwich_share > 10:
            insights.append(
                f"{sandwich_share:.1f}% of blocks with {symbol} activity in the last 24 hours "
                "show sandwich-like transfer clustering."
            )
        if frontrun_share > 5:
            insights.append(
                f"{frontrun_share:.1f}% of recent blocks contain mirrored transfers consistent with frontrunning."
            )

    if risk_score >= 70:
        insights.append("Overall MEV risk is elevated; large transfers may be exposed to extraction.")
    elif risk_score <= 30:
        insights.append("Overall MEV risk is currently low.")

    return insights or [f"MEV activity around {symbol} is within normal ranges."]


def fallback_predictions(current: Optional[MarketSnapshot]) -> List[Prediction]:
    """Rule-based predictions from the most recent hour of activity."""
    predictions = []

    if current is not None and current.whale_transactions > 0:
        predictions.append(Prediction(
            type="WHALE_MOVEMENT",
            probability=0.7,
            reasoning=(
                f"Detected {current.whale_transactions} recent whale transactions "
                f"with volume ${current.whale_volume:,.2f}"
            ),
            suggested_action="Monitor large wallet movements closely",
            timeframe="Next 24 hours",
            confidence="MEDIUM",
            potential_impact="HIGH",
        ))

    if current is not None and current.accumulation_wallets > current.distribution_wallets:
        predictions.append(Prediction(
            type="ACCUMULATION",
            probability=0.65,
            reasoning=f"{current.accumulation_wallets} wallets showing accumulation patterns",
            suggested_action="Watch for potential upward pressure",
            timeframe="2-3 days",
            confidence="MEDIUM",
            potential_impact="MEDIUM",
        ))
    elif current is not None and current.distribution_wallets > current.accumulation_wallets:
        predictions.append(Prediction(
            type="DISTRIBUTION",
            probability=0.65,
            reasoning=f"{current.distribution_wallets} wallets showing distribution patterns",
            suggested_action="Monitor for potential selling pressure",
            timeframe="2-3 days",
            confidence="MEDIUM",
            potential_impact="MEDIUM",
        ))

    if len(predictions) < 2:
        predictions.append(Prediction(
            type="NORMAL",
            probability=0.8,
            reasoning="Market metrics within normal ranges",
            suggested_action="Maintain regular monitoring",
            timeframe="24 hours",
            confidence="HIGH",
            potential_impact="LOW",
        ))

    return predictions


class InsightGenerator:
    """Wraps the generative model with timeouts and rule-based fallbacks."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout: Optional[float] = None,
        model: Any = None,
        symbol: Optional[str] = None,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self.timeout = timeout or settings.ai_timeout
        self.symbol = symbol or settings.token_symbol
        self.model = model

        if self.model is None and self.api_key:
            genai.configure(api_key=self.api_key)
            self.model = genai.GenerativeModel(model_name=self.model_name)

    @property
    def available(self) -> bool:
        return self.model is not None

    async def generate(self, prompt: str) -> str:
        """Send a prompt and return the response text.

        Raises:
            InsightUnavailable: If the model is unconfigured, fails, times out
                or returns no text
        """
        if self.model is None:
            raise InsightUnavailable("Generative model is not configured")

        try:
            response = await asyncio.wait_for(
                self.model.generate_content_async(prompt),
                timeout=self.timeout,
            )
            text = response.text
        except asyncio.TimeoutError as e:
            raise InsightUnavailable(f"Generative model timed out after {self.timeout}s") from e
        except Exception as e:
            raise InsightUnavailable(f"Generative model call failed: {e}") from e

        if not text or not text.strip():
            raise InsightUnavailable("Generative model returned an empty response")
        return text

    async def wallet_insights(
        self,
        address: str,
        balance: float,
        stats: WalletStats,
        as_of: Optional[datetime] = None,
    ) -> List[str]:
        """Three to five short observations about one wallet."""
        if stats.total_transactions == 0:
            return [NO_HISTORY_INSIGHT.format(symbol=self.symbol)]

        prompt = f"""
Analyze this Ethereum wallet's {self.symbol} stablecoin transaction data and provide 3-5 concise insights (each under 150 characters):

Wallet: {address}
Current {self.symbol} Balance: ${balance:.2f}
Total Transactions: {stats.total_transactions}
First Transaction: {stats.first_transaction_date or "Unknown"}

Send Transactions: {stats.send_transactions}
Receive Transactions: {stats.receive_transactions}
Total Sent: ${stats.total_sent:.2f}
Total Received: ${stats.total_received:.2f}
Max Sent: ${stats.max_sent:.2f}
Max Received: ${stats.max_received:.2f}
Average Sent: ${stats.avg_sent:.2f}
Average Received: ${stats.avg_received:.2f}

Focus on transaction patterns, wallet behavior, and potential use cases. Each insight should begin with a dash (-) and be on a new line.
"""
        try:
            insights = parse_bullets(await self.generate(prompt))
            if insights:
                return insights
            logger.warning("Model output held no usable wallet insights", address=address)
        except InsightUnavailable as e:
            logger.warning("Wallet insights unavailable, using rules", address=address, error=str(e))

        insight_fallbacks.labels("wallet").inc()
        return wallet_fallback_insights(
            balance, stats, as_of or datetime.now(timezone.utc), self.symbol
        )

    async def mev_insights(
        self,
        recent_stats: Dict[str, int],
        risk_score: int,
        monthly_trends: Sequence[Dict[str, Any]],
        moving_averages: Sequence[Dict[str, Any]],
    ) -> List[str]:
        """Short observations about MEV-like activity around the token."""
        months = "\n".join(
            f"- {m['month']}: {m['sandwich_blocks']} sandwich-like, {m['frontrun_blocks']} frontrun-like "
            f"of {m['total_blocks']} blocks"
            for m in list(monthly_trends)[-6:]
        ) or "- No monthly data"
        averages = "\n".join(
            f"- {a['date']}: sandwich {a['avg_sandwich_count']}, frontrun {a['avg_frontrun_count']}"
            for a in list(moving_averages)[-7:]
        ) or "- Not enough daily data"

        prompt = f"""
Analyze this {self.symbol} MEV activity summary and provide 3-5 concise insights (each under 150 characters).

Last 24 hours:
- Blocks with {self.symbol} transfers: {recent_stats.get("total_blocks_24h", 0)}
- Sandwich-like blocks: {recent_stats.get("sandwich_blocks_24h", 0)}
- Frontrun-like blocks: {recent_stats.get("frontrun_blocks_24h", 0)}
- Heuristic risk score (0-100): {risk_score}

Recent months:
{months}

7-day moving averages:
{averages}

Each insight should begin with a dash (-) and be on a new line.
"""
        try:
            insights = parse_bullets(await self.generate(prompt))
            if insights:
                return insights
            logger.warning("Model output held no usable MEV insights")
        except InsightUnavailable as e:
            logger.warning("MEV insights unavailable, using rules", error=str(e))

        insight_fallbacks.labels("mev").inc()
        return mev_fallback_insights(recent_stats, risk_score, self.symbol)

    async def market_predictions(self, snapshots: Sequence[MarketSnapshot]) -> List[Prediction]:
        """Predictions about upcoming market movements.

        Args:
            snapshots: Hourly market activity, newest first
        """
        current = snapshots[0] if snapshots else None
        if current is None:
            insight_fallbacks.labels("predictions").inc()
            return fallback_predictions(None)

        trends = analytics.market_trends(snapshots)
        averages = analytics.hourly_averages(snapshots)

        prompt = f"""
Analyze this {self.symbol} market data and generate specific predictions about potential market movements.
Focus on identifying patterns that might indicate future significant movements.

Current Market State:
- Transaction Volume: ${current.volume:,.2f}
- Unique Active Wallets: {current.unique_senders + current.unique_receivers}
- Whale Transactions: {current.whale_transactions}
- Whale Volume: ${current.whale_volume:,.2f}
- Accumulation Wallets: {current.accumulation_wallets}
- Distribution Wallets: {current.distribution_wallets}

Recent Trends:
- Volume Trend: {trends["volumeTrend"]}
- Whale Activity Trend: {trends["whaleActivityTrend"]}
- Network Activity: {trends["networkActivityTrend"]}

Hourly Averages:
- Avg Transaction Count: {averages["avgTxCount"]}
- Avg Volume: ${averages["avgVolume"]:,}
- Avg Whale Transactions: {averages["avgWhaleTx"]}

Based on this data, provide 3 specific predictions as a JSON array of objects with the keys
"type" (ACCUMULATION|DISTRIBUTION|WHALE_MOVEMENT|NORMAL), "probability" (number between 0 and 1),
"reasoning", "suggestedAction", "timeframe", "confidence" (HIGH|MEDIUM|LOW) and
"potentialImpact" (HIGH|MEDIUM|LOW). Respond with the JSON array only.
"""
        try:
            predictions = parse_predictions(await self.generate(prompt))
            if predictions:
                return predictions
            logger.warning("Model output held no valid predictions")
        except InsightUnavailable as e:
            logger.warning("Predictions unavailable, using rules", error=str(e))

        insight_fallbacks.labels("predictions").inc()
        return fallback_predictions(current)
