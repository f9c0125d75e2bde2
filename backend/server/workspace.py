"""
Workspaces.

A workspace is one dataset plus the charts exploring it. All its charts
share a coordinator (one DuckDB connection), a cross-filter and a stats
cache. The whole arrangement can be saved as an ``AppState`` and restored.

Workspaces are kept in memory per session, like uploaded tables were:

    ws = get_workspace(session_id)
    ws.load_dataframe(df, "penguins")
    chart_id = await ws.create_chart(histogram_spec("bill_length"))
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from core.config import APP_STATE_VERSION, DEFAULT_TABLE
from core.context import ChartContext, ContextCache
from core.coordinator import Coordinator, DuckDBConnector
from core.crossfilter import CrossFilter
from core.models import AppState, ChartSpec, NormalizeWidget, ScaleTypeWidget
from core.utils import json_safe
from server.chart_runtime import ChartRuntime, parse_spec
from skills.default_charts import default_charts
from skills.selection import click_state
from skills.widgets import apply_widget, widget_value

logger = logging.getLogger("uvicorn.error")


class ChartNotFoundError(KeyError):
    pass


class Workspace:
    def __init__(self, connector: Optional[DuckDBConnector] = None, table: str = DEFAULT_TABLE) -> None:
        self.connector = connector if connector is not None else DuckDBConnector()
        self.coordinator = Coordinator(self.connector)
        self.filter = CrossFilter()
        self.context = ChartContext(self.coordinator, table, self.filter, ContextCache())
        self.charts: Dict[str, ChartRuntime] = {}
        self.layout: Optional[str] = None
        self.layout_states: Dict[str, Any] = {}
        self.tables: Dict[str, Dict[str, Any]] = {}

    @property
    def table(self) -> str:
        return self.context.table

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def load_dataframe(self, df: pd.DataFrame, table: Optional[str] = None) -> str:
        """Load ``df`` as the workspace's table; cached stats are dropped."""
        name = table or self.context.table
        self.connector.load_dataframe(name, df)
        self.context.table = name
        self.context.cache.clear()
        self.tables[name] = {"rows": int(len(df)), "columns": [str(c) for c in df.columns]}
        logger.info("Loaded table %s (%d rows, %d columns)", name, len(df), len(df.columns))
        return name

    # ------------------------------------------------------------------
    # Charts
    # ------------------------------------------------------------------

    def get_chart(self, chart_id: str) -> ChartRuntime:
        runtime = self.charts.get(chart_id)
        if runtime is None:
            raise ChartNotFoundError(chart_id)
        return runtime

    async def create_chart(
        self,
        spec: Union[ChartSpec, Dict[str, Any]],
        state: Optional[Dict[str, Any]] = None,
        chart_id: Optional[str] = None,
    ) -> str:
        spec = parse_spec(spec)
        chart_id = chart_id or uuid.uuid4().hex[:8]
        if chart_id in self.charts:
            self.remove_chart(chart_id)
        runtime = ChartRuntime(self.context, name=chart_id)
        self.charts[chart_id] = runtime
        try:
            await runtime.set_spec(spec)
        except (Exception, asyncio.CancelledError):
            runtime.destroy()
            self.charts.pop(chart_id, None)
            raise
        if state is not None:
            runtime.set_state(state, mode="replace")
        return chart_id

    def remove_chart(self, chart_id: str) -> None:
        runtime = self.get_chart(chart_id)
        runtime.destroy()
        del self.charts[chart_id]

    async def update_spec(self, chart_id: str, value: Dict[str, Any], mode: str = "merge") -> None:
        await self.get_chart(chart_id).update_spec(value, mode)

    def set_state(self, chart_id: str, value: Optional[Dict[str, Any]], mode: str = "merge") -> None:
        self.get_chart(chart_id).set_state(value, mode)

    def click(self, chart_id: str, selection: str, axis: str, value: Any, additive: bool = False) -> None:
        """Toggle ``value`` in a click selection of the chart."""
        runtime = self.get_chart(chart_id)
        if runtime.spec is None or selection not in runtime.spec.selection:
            raise ValueError(f"Chart '{chart_id}' has no selection '{selection}'")
        runtime.set_state(click_state(runtime.state.get(), selection, axis, value, additive))

    def widgets(self, chart_id: str) -> List[Dict[str, Any]]:
        runtime = self.get_chart(chart_id)
        if runtime.spec is None:
            return []
        return [
            {**widget.model_dump(by_alias=True), "value": widget_value(runtime.spec, widget)}
            for widget in runtime.spec.widgets
        ]

    async def set_widget(self, chart_id: str, index: int, value: Any) -> None:
        runtime = self.get_chart(chart_id)
        if runtime.spec is None or not 0 <= index < len(runtime.spec.widgets):
            raise ValueError(f"Chart '{chart_id}' has no widget {index}")
        widget: Union[ScaleTypeWidget, NormalizeWidget] = runtime.spec.widgets[index]
        await runtime.update_spec(apply_widget(runtime.spec, widget, value), mode="replace")

    async def create_default_charts(
        self,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
        override: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
    ) -> List[str]:
        specs = await default_charts(self.coordinator, self.table, include, exclude, override)
        return [await self.create_chart(spec) for spec in specs]

    def reset_filter(self) -> None:
        """Clear every selection of every chart."""
        self.filter.reset()

    async def settle(self) -> None:
        await self.coordinator.settle()

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def chart_payload(self, chart_id: str) -> Dict[str, Any]:
        """JSON-ready view of a chart: spec, state, outputs, selections and error."""
        runtime = self.get_chart(chart_id)
        outputs = runtime.outputs.get()
        error = runtime.error.get()
        return json_safe({
            "id": chart_id,
            "spec": runtime.spec.to_json() if runtime.spec is not None else None,
            "state": runtime.state.get(),
            "outputs": outputs.model_dump(by_alias=True) if outputs is not None else None,
            "selections": [{"key": s.key, "type": s.type} for s in runtime.selections.get() or []],
            "error": str(error) if error is not None else None,
        })

    # ------------------------------------------------------------------
    # Persisted state
    # ------------------------------------------------------------------

    def snapshot(self) -> AppState:
        return AppState(
            version=APP_STATE_VERSION,
            charts={cid: r.spec.to_json() for cid, r in self.charts.items() if r.spec is not None},
            chart_states={cid: r.state.get() for cid, r in self.charts.items() if r.state.get() is not None},
            layout=self.layout,
            layout_states=dict(self.layout_states),
            predicate=self.filter.to_sql(),
        )

    async def restore(self, state: Union[AppState, Dict[str, Any]]) -> None:
        """Replace all charts with the ones in ``state``; its predicate is ignored."""
        if not isinstance(state, AppState):
            state = AppState.model_validate(state)
        if state.version != APP_STATE_VERSION:
            logger.warning("Restoring app state version %s (current %s)", state.version, APP_STATE_VERSION)
        for chart_id in list(self.charts):
            self.remove_chart(chart_id)
        self.filter.reset()
        self.layout = state.layout
        self.layout_states = dict(state.layout_states)
        for chart_id, spec in state.charts.items():
            await self.create_chart(spec, state=state.chart_states.get(chart_id), chart_id=chart_id)

    def close(self) -> None:
        for chart_id in list(self.charts):
            self.remove_chart(chart_id)
        self.connector.close()


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

WORKSPACES: Dict[str, Workspace] = {}


def get_workspace(session_id: str) -> Workspace:
    if session_id not in WORKSPACES:
        WORKSPACES[session_id] = Workspace()
    return WORKSPACES[session_id]


def drop_workspace(session_id: str) -> None:
    ws = WORKSPACES.pop(session_id, None)
    if ws is not None:
        ws.close()
