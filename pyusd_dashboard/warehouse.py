"""Analytics warehouse gateway (BigQuery)."""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog
from google.cloud import bigquery

from pyusd_dashboard.config import settings
from pyusd_dashboard.models import decode_all
from pyusd_dashboard.queries import render
from pyusd_dashboard.telemetry import warehouse_query_duration

logger = structlog.get_logger(__name__)

RowT = TypeVar("RowT")


class WarehouseError(Exception):
    """Raised when a warehouse query fails, times out, or is misconfigured."""
    pass


def query_parameter(name: str, value: Any) -> bigquery.ScalarQueryParameter:
    """Build a typed scalar query parameter from a Python value."""
    if isinstance(value, bool):
        kind = "BOOL"
    elif isinstance(value, int):
        kind = "INT64"
    elif isinstance(value, float):
        kind = "FLOAT64"
    elif isinstance(value, Decimal):
        kind = "NUMERIC"
    elif isinstance(value, datetime):
        kind = "TIMESTAMP"
    elif isinstance(value, date):
        kind = "DATE"
    else:
        kind = "STRING"
        value = None if value is None else str(value)
    return bigquery.ScalarQueryParameter(name, kind, value)


class Warehouse:
    """Runs parameterized SQL against the public token transfers table.

    The client library is synchronous, so each query runs in a worker
    thread bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        project: Optional[str] = None,
        table: Optional[str] = None,
        location: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[bigquery.Client] = None,
    ):
        self.project = project or settings.gcp_project
        self.table = table or settings.warehouse_table
        self.location = location or settings.warehouse_location
        self.timeout = timeout or settings.warehouse_timeout
        self.client = client
        self._connect_lock = asyncio.Lock()

    async def connect(self):
        """Create the BigQuery client using application default credentials."""
        async with self._connect_lock:
            if self.client is not None:
                return
            try:
                self.client = await asyncio.to_thread(
                    bigquery.Client, project=self.project, location=self.location
                )
            except Exception as e:
                raise WarehouseError(f"Unable to create warehouse client: {e}") from e
            logger.info("Warehouse client ready", project=self.client.project, table=self.table)

    async def disconnect(self):
        """Close the client's HTTP transport."""
        client, self.client = self.client, None
        if client is not None:
            await asyncio.to_thread(client.close)

    def _run(self, sql: str, job_config: bigquery.QueryJobConfig) -> List[Dict[str, Any]]:
        job = self.client.query(sql, job_config=job_config)
        return [dict(row.items()) for row in job.result(timeout=self.timeout)]

    async def query(self, template: str, params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        """Execute a query template and return its rows as dicts.

        Args:
            template: SQL from ``pyusd_dashboard.queries``
            params: Values bound to the template's ``@name`` parameters

        Returns:
            List of row dicts

        Raises:
            WarehouseError: On configuration, execution or timeout failures
        """
        if self.client is None:
            await self.connect()

        try:
            sql = render(template, self.table)
        except ValueError as e:
            raise WarehouseError(str(e)) from e

        job_config = bigquery.QueryJobConfig(
            query_parameters=[query_parameter(name, value) for name, value in (params or {}).items()]
        )

        try:
            with warehouse_query_duration.time():
                rows = await asyncio.wait_for(
                    asyncio.to_thread(self._run, sql, job_config),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as e:
            logger.error("Warehouse query timed out", timeout=self.timeout)
            raise WarehouseError(f"Warehouse query exceeded {self.timeout}s") from e
        except Exception as e:
            logger.error("Warehouse query failed", error=str(e))
            raise WarehouseError(f"Warehouse query failed: {e}") from e

        logger.debug("Warehouse query complete", rows=len(rows))
        return rows

    async def fetch(self, model: Type[RowT], template: str, params: Dict[str, Any] = None) -> List[RowT]:
        """Execute a query and validate every row into ``model``."""
        return decode_all(model, await self.query(template, params))

    async def fetch_one(self, model: Type[RowT], template: str, params: Dict[str, Any] = None) -> Optional[RowT]:
        """Execute a query and validate its first row, or return None."""
        rows = await self.fetch(model, template, params)
        return rows[0] if rows else None

    async def health_check(self) -> bool:
        """Check that a client can be created."""
        try:
            await self.connect()
            return True
        except WarehouseError:
            return False
