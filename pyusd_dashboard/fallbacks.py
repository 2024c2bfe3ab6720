"""Static degraded payloads served with HTTP 500 when upstream data is unavailable.

Each payload has the same shape as the endpoint's success response so the
UI can render it without a separate error path.
"""

import copy
from typing import Any, Dict

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_HOLDERS = {
    "holders": [
        {"address": "0x688e...ac82", "balance": 180621920.5, "percentage": 28.64},
        {"address": "0x2fb0...41a4", "balance": 144359776.77, "percentage": 22.89},
        {"address": "0x9ceb...0328", "balance": 79922093.41, "percentage": 12.67},
        {"address": "0x5c5d...85a0", "balance": 35642535, "percentage": 5.65},
        {"address": "0x7e4b...477a", "balance": 20121862.32, "percentage": 3.19},
        {"address": "Others", "balance": 169988157.11, "percentage": 26.96},
    ],
    "totalHolders": 24201,
}

_MONTHLY_AVG = [
    {"period": "Mar 2024", "avg_daily_change": 75000, "total_change": 1500000},
    {"period": "Feb 2024", "avg_daily_change": 89285.71, "total_change": 2500000},
    {"period": "Jan 2024", "avg_daily_change": 38709.68, "total_change": 1200000},
    {"period": "Dec 2023", "avg_daily_change": 16129.03, "total_change": 500000},
    {"period": "Nov 2023", "avg_daily_change": 10000, "total_change": 300000},
]

_YEARLY_AVG = [
    {"period": "2024", "avg_daily_change": 67032.97, "total_change": 6100000},
    {"period": "2023", "avg_daily_change": 13114.75, "total_change": 800000},
]

_TOKEN_SUPPLY = {
    "current_supply": 6000000,
    "total_minted": 6300000,
    "total_burned": 300000,
    "supply_history": [
        {"date": "Nov 1, 2023", "change": 100000, "total": 100000},
        {"date": "Nov 15, 2023", "change": 200000, "total": 300000},
        {"date": "Dec 1, 2023", "change": 150000, "total": 450000},
        {"date": "Dec 15, 2023", "change": 350000, "total": 800000},
        {"date": "Jan 1, 2024", "change": 500000, "total": 1300000},
        {"date": "Jan 15, 2024", "change": 700000, "total": 2000000},
        {"date": "Feb 1, 2024", "change": 1000000, "total": 3000000},
        {"date": "Feb 15, 2024", "change": 1500000, "total": 4500000},
        {"date": "Mar 1, 2024", "change": 1000000, "total": 5500000},
        {"date": "Mar 15, 2024", "change": 500000, "total": 6000000},
    ],
    "monthly_avg": _MONTHLY_AVG,
    "yearly_avg": _YEARLY_AVG,
    "current_month_avg": _MONTHLY_AVG[0],
    "current_year_avg": _YEARLY_AVG[0],
}

_TRANSACTION_VOLUME = {
    "data": [
        {"date": "Jan 1", "volume": 400000},
        {"date": "Jan 5", "volume": 600000},
        {"date": "Jan 10", "volume": 800000},
        {"date": "Jan 15", "volume": 1000000},
        {"date": "Jan 20", "volume": 1200000},
        {"date": "Jan 25", "volume": 1800000},
        {"date": "Feb 1", "volume": 2400000},
        {"date": "Feb 5", "volume": 2600000},
        {"date": "Feb 10", "volume": 3200000},
        {"date": "Feb 15", "volume": 3800000},
        {"date": "Feb 20", "volume": 4200000},
        {"date": "Feb 25", "volume": 4600000},
        {"date": "Mar 1", "volume": 5000000},
    ],
    "summary": {
        "volume_24h": 5432100,
        "percent_change_24h": 5.2,
        "volume_7d": 23487562,
        "percent_change_7d": 12.8,
        "volume_30d": 78123456,
        "percent_change_30d": 21.4,
    },
}

_MEV = {
    "risk_score": 50,
    "insights": ["MEV analysis is temporarily unavailable."],
    "last_week_activity": [],
    "monthly_trends": [],
    "moving_averages": [],
    "recent_activities": [],
    "recent_stats": {"sandwich_blocks_24h": 0, "frontrun_blocks_24h": 0, "total_blocks_24h": 0},
}

_PREDICTIONS = {
    "timestamp": None,
    "predictions": [],
    "marketData": None,
}

_ADDRESS_INFO = {
    "address": ZERO_ADDRESS,
    "balance": 0,
    "stats": {
        "total_transactions": 0,
        "first_transaction_date": None,
        "send_transactions": 0,
        "receive_transactions": 0,
        "total_sent": 0,
        "total_received": 0,
        "max_sent": 0,
        "max_received": 0,
        "avg_sent": 0,
        "avg_received": 0,
    },
    "ai_insights": ["Unable to fetch data for this address."],
}

_PAYLOADS = {
    "holders": _HOLDERS,
    "token_supply": _TOKEN_SUPPLY,
    "transaction_volume": _TRANSACTION_VOLUME,
    "mev": _MEV,
    "predictions": _PREDICTIONS,
    "address_info": _ADDRESS_INFO,
}


def fallback(report: str, error: str) -> Dict[str, Any]:
    """Return a fresh copy of a report's degraded payload with an ``error`` field."""
    payload = copy.deepcopy(_PAYLOADS[report])
    payload["error"] = error
    return payload
