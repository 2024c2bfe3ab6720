"""Prometheus metrics shared by the service components."""

from prometheus_client import Counter, Gauge, Histogram

rpc_request_duration = Histogram(
    "dashboard_rpc_request_duration_seconds",
    "Time taken for JSON-RPC node requests",
    ["method"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10]
)

rpc_subrange_failures = Counter(
    "dashboard_rpc_subrange_failures_total",
    "eth_getLogs sub-ranges skipped after exhausting retries"
)

feed_refresh_cycles = Counter(
    "dashboard_feed_refresh_cycles_total",
    "Live feed refresh cycles by outcome",
    ["outcome"]
)

feed_transfers_ingested = Counter(
    "dashboard_feed_transfers_ingested_total",
    "Transfer events decoded and merged into the live feed"
)

feed_watermark = Gauge(
    "dashboard_feed_watermark_block",
    "Highest block incorporated into the live feed"
)

feed_size = Gauge(
    "dashboard_feed_size",
    "Transfers currently held by the live feed"
)

warehouse_query_duration = Histogram(
    "dashboard_warehouse_query_duration_seconds",
    "Time taken for warehouse queries",
    buckets=[0.5, 1, 2, 5, 10, 20, 30, 60]
)

insight_fallbacks = Counter(
    "dashboard_insight_fallbacks_total",
    "Insight requests answered by the rule-based fallback",
    ["kind"]
)

http_responses = Counter(
    "dashboard_http_responses_total",
    "HTTP responses by route and status",
    ["route", "status"]
)
