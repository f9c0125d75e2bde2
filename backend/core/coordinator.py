"""
Query coordination.

``DuckDBConnector`` runs SQL on a DuckDB database off the event loop.
``Coordinator`` owns the live ``QueryClient``s: it issues each client's
query, re-issues it whenever the client's cross-filter changes, and keeps at
most one request in flight per client (a newer request cancels the older
one). Results that arrive after a client was destroyed are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import duckdb
import pandas as pd
from sqlglot import exp

from core.config import DUCKDB_PATH, QUERY_TIMEOUT_SECONDS
from core.crossfilter import Clause, CrossFilter
from core.errors import QueryExecutionError
from core.sql import to_sql

logger = logging.getLogger("uvicorn.error")

QueryLike = Union[str, exp.Expression]


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------

class DuckDBConnector:
    """Async facade over a DuckDB connection (one cursor per call)."""

    def __init__(self, path: str = DUCKDB_PATH, timeout: float = QUERY_TIMEOUT_SECONDS) -> None:
        self._conn = duckdb.connect(path)
        self.timeout = timeout

    def _fetch(self, sql: str) -> pd.DataFrame:
        cursor = self._conn.cursor()
        try:
            return cursor.execute(sql).df()
        finally:
            cursor.close()

    def _execute(self, sql: str) -> None:
        cursor = self._conn.cursor()
        try:
            cursor.execute(sql)
        finally:
            cursor.close()

    async def _run(self, fn: Callable[[str], Any], sql: str) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, sql), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise QueryExecutionError(f"Query timed out after {self.timeout:g}s", sql) from e
        except duckdb.Error as e:
            raise QueryExecutionError(str(e), sql) from e

    async def query(self, query: QueryLike) -> pd.DataFrame:
        return await self._run(self._fetch, to_sql(query))

    async def exec(self, sql: str) -> None:
        await self._run(self._execute, sql)

    def load_dataframe(self, name: str, df: pd.DataFrame) -> None:
        """Create (or replace) table ``name`` from a DataFrame."""
        cursor = self._conn.cursor()
        try:
            cursor.register("_incoming", df)
            cursor.execute(f'CREATE OR REPLACE TABLE "{name}" AS SELECT * FROM _incoming')
            cursor.unregister("_incoming")
        except duckdb.Error as e:
            raise QueryExecutionError(str(e), f"CREATE OR REPLACE TABLE \"{name}\"") from e
        finally:
            cursor.close()

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class QueryClient:
    """A live query: ``query`` builds SQL for a filter predicate, results go to ``on_result``."""

    def __init__(
        self,
        query: Callable[[Optional[exp.Expression]], QueryLike],
        on_result: Callable[[pd.DataFrame], None],
        *,
        filter_by: Optional[CrossFilter] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        name: str = "",
    ) -> None:
        self._query = query
        self._on_result = on_result
        self._on_error = on_error
        self.filter_by = filter_by
        self.name = name
        self.destroyed = False
        self.coordinator: Optional["Coordinator"] = None

    def query(self, predicate: Optional[exp.Expression]) -> QueryLike:
        return self._query(predicate)

    def query_result(self, df: pd.DataFrame) -> None:
        self._on_result(df)

    def query_error(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)

    def destroy(self) -> None:
        self.destroyed = True
        if self.coordinator is not None:
            self.coordinator.disconnect(self)

    def __repr__(self) -> str:
        return f"QueryClient({self.name!r})"


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class Coordinator:
    def __init__(self, connector: DuckDBConnector) -> None:
        self.connector = connector
        self.clients: List[QueryClient] = []
        self._pending: Dict[int, asyncio.Task] = {}
        self._filters: Dict[int, Callable[[], None]] = {}
        # Number of queries sent to the backend; tests use it to detect re-queries.
        self.query_count = 0

    async def query(self, query: QueryLike) -> pd.DataFrame:
        self.query_count += 1
        sql = to_sql(query)
        logger.debug("Query: %s", sql)
        return await self.connector.query(sql)

    async def exec(self, sql: str) -> None:
        await self.connector.exec(sql)

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    def connect(self, client: QueryClient) -> None:
        """Register ``client`` and issue its first query."""
        if client in self.clients:
            return
        self.clients.append(client)
        client.coordinator = self
        if client.filter_by is not None and id(client.filter_by) not in self._filters:
            selection = client.filter_by
            self._filters[id(selection)] = selection.add_listener(
                lambda clause: self._filter_changed(selection, clause)
            )
        self.request_query(client)

    def disconnect(self, client: QueryClient) -> None:
        """Forget ``client`` and cancel its in-flight request."""
        if client not in self.clients:
            return
        self.clients.remove(client)
        client.coordinator = None
        task = self._pending.pop(id(client), None)
        if task is not None:
            task.cancel()
        selection = client.filter_by
        if selection is not None and not any(c.filter_by is selection for c in self.clients):
            remove = self._filters.pop(id(selection), None)
            if remove is not None:
                remove()

    def request_query(self, client: QueryClient) -> None:
        previous = self._pending.pop(id(client), None)
        if previous is not None:
            previous.cancel()
        task = asyncio.get_running_loop().create_task(self._run_client(client))
        self._pending[id(client)] = task

    def _filter_changed(self, selection: CrossFilter, clause: Optional[Clause]) -> None:
        for client in list(self.clients):
            if client.filter_by is not selection:
                continue
            if clause is not None and client in clause.clients:
                continue
            self.request_query(client)

    async def _run_client(self, client: QueryClient) -> None:
        task = asyncio.current_task()
        try:
            predicate = client.filter_by.predicate(client) if client.filter_by is not None else None
            df = await self.query(client.query(predicate))
            if client.destroyed:
                logger.debug("Discarding result for destroyed client %r", client)
                return
            client.query_result(df)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if client.destroyed:
                return
            logger.exception("Query failed for client %r", client)
            client.query_error(e)
        finally:
            if self._pending.get(id(client)) is task:
                del self._pending[id(client)]

    async def settle(self) -> None:
        """Wait until no client query is in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
