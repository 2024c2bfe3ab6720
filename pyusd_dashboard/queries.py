"""Parameterized warehouse query templates.

Values are always passed as query parameters (``@name``). The only text
substitution is the transfers table identifier, which is validated first.
"""

import re

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TABLE_IDENTIFIER = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+){1,2}$")


class InvalidTableName(ValueError):
    """Raised when the configured table is not a plain identifier."""
    pass


def render(template: str, table: str) -> str:
    """Substitute the validated table identifier into a template."""
    if not TABLE_IDENTIFIER.match(table):
        raise InvalidTableName(f"Refusing to use table identifier {table!r}")
    return template.replace("{table}", f"`{table}`")


# Holders ------------------------------------------------------------------

_BALANCES = """
  token_balances AS (
    SELECT address, SUM(balance_change) AS balance
    FROM (
      SELECT to_address AS address, CAST(quantity AS NUMERIC) AS balance_change
      FROM {table}
      WHERE address = @token
      UNION ALL
      SELECT from_address AS address, -CAST(quantity AS NUMERIC) AS balance_change
      FROM {table}
      WHERE address = @token
    )
    GROUP BY address
  )
"""

TOP_HOLDERS = "WITH" + _BALANCES + """
SELECT address, balance
FROM token_balances
WHERE balance > 0 AND address != @zero_address
ORDER BY balance DESC
LIMIT @limit
"""

HOLDER_COUNT = "WITH" + _BALANCES + """
SELECT COUNT(*) AS holder_count
FROM token_balances
WHERE balance > 0 AND address != @zero_address
"""

TOTAL_SUPPLY = """
SELECT
  COALESCE(SUM(CASE WHEN from_address = @zero_address THEN CAST(quantity AS NUMERIC) END), 0)
  - COALESCE(SUM(CASE WHEN to_address = @zero_address THEN CAST(quantity AS NUMERIC) END), 0)
  AS total_supply
FROM {table}
WHERE address = @token
"""

# Supply -------------------------------------------------------------------

SUPPLY_TOTALS = """
SELECT
  SUM(CASE WHEN from_address = @zero_address THEN CAST(quantity AS NUMERIC) END) AS total_minted,
  SUM(CASE WHEN to_address = @zero_address THEN CAST(quantity AS NUMERIC) END) AS total_burned,
  COALESCE(SUM(CASE WHEN from_address = @zero_address THEN CAST(quantity AS NUMERIC) END), 0)
  - COALESCE(SUM(CASE WHEN to_address = @zero_address THEN CAST(quantity AS NUMERIC) END), 0)
  AS current_supply
FROM {table}
WHERE address = @token
"""

_DAILY_SUPPLY_CHANGES = """
  daily_changes AS (
    SELECT
      DATE(block_timestamp) AS date,
      SUM(
        CASE
          WHEN from_address = @zero_address THEN CAST(quantity AS NUMERIC)
          WHEN to_address = @zero_address THEN -CAST(quantity AS NUMERIC)
          ELSE 0
        END
      ) AS daily_change
    FROM {table}
    WHERE address = @token
      AND (from_address = @zero_address OR to_address = @zero_address)
    GROUP BY date
  )
"""

SUPPLY_HISTORY = "WITH" + _DAILY_SUPPLY_CHANGES + """
SELECT
  FORMAT_DATE('%b %d, %Y', date) AS formatted_date,
  daily_change,
  SUM(daily_change) OVER (ORDER BY date) AS cumulative_supply
FROM daily_changes
ORDER BY date
"""

MONTHLY_SUPPLY = "WITH" + _DAILY_SUPPLY_CHANGES + """
SELECT
  FORMAT_DATE('%b %Y', DATE_TRUNC(date, MONTH)) AS period,
  AVG(daily_change) AS avg_daily_change,
  SUM(daily_change) AS total_change
FROM daily_changes
GROUP BY DATE_TRUNC(date, MONTH)
ORDER BY DATE_TRUNC(date, MONTH) DESC
LIMIT 12
"""

YEARLY_SUPPLY = "WITH" + _DAILY_SUPPLY_CHANGES + """
SELECT
  CAST(EXTRACT(YEAR FROM date) AS STRING) AS period,
  AVG(daily_change) AS avg_daily_change,
  SUM(daily_change) AS total_change
FROM daily_changes
GROUP BY EXTRACT(YEAR FROM date)
ORDER BY EXTRACT(YEAR FROM date) DESC
"""

# Volume -------------------------------------------------------------------

DAILY_VOLUME = """
SELECT
  FORMAT_DATE('%b %d', DATE(block_timestamp)) AS formatted_date,
  SUM(CAST(quantity AS NUMERIC)) AS volume
FROM {table}
WHERE address = @token
  AND block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL @days DAY)
GROUP BY DATE(block_timestamp)
ORDER BY DATE(block_timestamp)
"""

VOLUME_SUMMARY = """
WITH recent AS (
  SELECT
    CAST(quantity AS NUMERIC) AS amount,
    TIMESTAMP_DIFF(CURRENT_TIMESTAMP(), block_timestamp, HOUR) AS age_hours
  FROM {table}
  WHERE address = @token
    AND block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 60 DAY)
)
SELECT
  SUM(IF(age_hours < 24, amount, NULL)) AS volume_24h,
  SUM(IF(age_hours >= 24 AND age_hours < 48, amount, NULL)) AS prev_volume_24h,
  SUM(IF(age_hours < 24 * 7, amount, NULL)) AS volume_7d,
  SUM(IF(age_hours >= 24 * 7 AND age_hours < 24 * 14, amount, NULL)) AS prev_volume_7d,
  SUM(IF(age_hours < 24 * 30, amount, NULL)) AS volume_30d,
  SUM(IF(age_hours >= 24 * 30 AND age_hours < 24 * 60, amount, NULL)) AS prev_volume_30d
FROM recent
"""

# MEV ----------------------------------------------------------------------

_FLAGGED_BLOCKS = """
  token_txs AS (
    SELECT block_number, block_timestamp, transaction_hash, event_index,
           from_address, to_address, CAST(quantity AS NUMERIC) AS amount
    FROM {table}
    WHERE address = @token
      AND block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL @days DAY)
  ),
  block_counts AS (
    SELECT block_number, COUNT(*) AS txs_in_block,
           MIN(block_timestamp) AS block_timestamp, SUM(amount) AS volume
    FROM token_txs
    GROUP BY block_number
  ),
  frontrun_blocks AS (
    SELECT DISTINCT a.block_number
    FROM token_txs a
    JOIN token_txs b
      ON a.block_number = b.block_number
     AND b.from_address = a.to_address
     AND b.to_address = a.from_address
     AND (b.transaction_hash != a.transaction_hash OR b.event_index != a.event_index)
    WHERE a.amount > 0
      AND ABS(b.amount - a.amount) / a.amount < @frontrun_tolerance
  ),
  flagged AS (
    SELECT c.*,
           c.txs_in_block >= @sandwich_min AS is_sandwich,
           f.block_number IS NOT NULL AS is_frontrun
    FROM block_counts c
    LEFT JOIN frontrun_blocks f USING (block_number)
  )
"""

MEV_MONTHLY = "WITH" + _FLAGGED_BLOCKS + """
SELECT
  FORMAT_DATE('%Y-%m', DATE(block_timestamp)) AS month,
  COUNT(*) AS total_blocks,
  SUM(txs_in_block) AS total_transactions,
  COUNTIF(is_sandwich) AS sandwich_blocks,
  COUNTIF(is_frontrun) AS frontrun_blocks,
  SUM(volume) AS total_volume
FROM flagged
GROUP BY month
ORDER BY month
"""

MEV_DAILY = "WITH" + _FLAGGED_BLOCKS + """
SELECT
  DATE(block_timestamp) AS activity_date,
  COUNTIF(is_sandwich) AS sandwich_blocks,
  COUNTIF(is_frontrun) AS frontrun_blocks,
  COUNT(*) AS total_blocks,
  SUM(volume) AS total_volume
FROM flagged
GROUP BY activity_date
ORDER BY activity_date
"""

RECENT_BLOCK_TRANSFERS = """
SELECT block_number, block_timestamp, transaction_hash, from_address, to_address,
       CAST(quantity AS NUMERIC) AS amount
FROM {table}
WHERE address = @token
  AND block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 24 HOUR)
ORDER BY block_number DESC
"""

# Market patterns ----------------------------------------------------------

MARKET_PATTERNS = """
WITH token_txs AS (
  SELECT block_timestamp, from_address, to_address, CAST(quantity AS NUMERIC) AS amount
  FROM {table}
  WHERE address = @token
    AND block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 7 DAY)
),
hourly_stats AS (
  SELECT
    TIMESTAMP_TRUNC(block_timestamp, HOUR) AS hour,
    COUNT(*) AS tx_count,
    SUM(amount) AS volume,
    COUNT(DISTINCT from_address) AS unique_senders,
    COUNT(DISTINCT to_address) AS unique_receivers,
    MAX(amount) AS max_transfer,
    COUNTIF(amount >= @whale_threshold) AS whale_txs,
    COALESCE(SUM(IF(amount >= @whale_threshold, amount, NULL)), 0) AS whale_volume
  FROM token_txs
  GROUP BY hour
),
accumulation AS (
  SELECT to_address
  FROM token_txs
  WHERE block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 24 HOUR)
  GROUP BY to_address
  HAVING COUNT(*) >= 3
),
distribution AS (
  SELECT from_address
  FROM token_txs
  WHERE block_timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 24 HOUR)
  GROUP BY from_address
  HAVING COUNT(*) >= 3
)
SELECT
  h.*,
  (SELECT COUNT(*) FROM accumulation) AS accumulation_wallets,
  (SELECT COUNT(*) FROM distribution) AS distribution_wallets
FROM hourly_stats h
ORDER BY h.hour DESC
"""

# Address ------------------------------------------------------------------

ADDRESS_TX_COUNT = """
SELECT COUNT(*) AS tx_count
FROM {table}
WHERE address = @token
  AND (from_address = @address OR to_address = @address)
"""

ADDRESS_FIRST_TX = """
SELECT MIN(block_timestamp) AS first_tx_date
FROM {table}
WHERE address = @token
  AND (from_address = @address OR to_address = @address)
"""

ADDRESS_TX_STATS = """
WITH txs AS (
  SELECT from_address, to_address, CAST(quantity AS NUMERIC) AS amount
  FROM {table}
  WHERE address = @token
    AND (from_address = @address OR to_address = @address)
)
SELECT
  COUNTIF(from_address = @address) AS send_txs,
  COUNTIF(to_address = @address) AS receive_txs,
  SUM(IF(from_address = @address, amount, NULL)) AS total_sent,
  SUM(IF(to_address = @address, amount, NULL)) AS total_received,
  MAX(IF(from_address = @address, amount, NULL)) AS max_sent,
  MAX(IF(to_address = @address, amount, NULL)) AS max_received,
  AVG(IF(from_address = @address, amount, NULL)) AS avg_sent,
  AVG(IF(to_address = @address, amount, NULL)) AS avg_received
FROM txs
"""
