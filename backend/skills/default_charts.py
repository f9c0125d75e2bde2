"""
Default chart suggestions.

Inspects a table's columns and proposes one chart spec per column:
histograms for numeric columns with many distinct values, and count plots
(horizontal bars of counts per level) for text columns or numeric columns
with few distinct values. Columns with a single distinct value are skipped.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from core.coordinator import Coordinator
from core.sql import column, count_distinct, select
from core.sql import table as sql_table
from skills.field_stats import column_kind

logger = logging.getLogger("uvicorn.error")

HISTOGRAM_MIN_DISTINCT = 10
COUNT_PLOT_MAX_DISTINCT = 1000


def histogram_spec(field: str, group_field: Optional[str] = None) -> Dict[str, Any]:
    """Histogram of ``field``: a faded full-data layer under a filtered layer."""
    filtered_encoding: Dict[str, Any] = {
        "x": {"field": field},
        "y": {"aggregate": "count"},
    }
    if group_field is not None:
        filtered_encoding["color"] = {"field": group_field}
    return {
        "title": field,
        "layers": [
            {
                "mark": "bar",
                "style": {"fillColor": "$markColorFade"},
                "encoding": {"x": {"field": field}, "y": {"aggregate": "count"}},
            },
            {"mark": "bar", "filter": "$filter", "encoding": filtered_encoding},
        ],
        "selection": {"brush": {"encoding": "x"}},
        "widgets": [
            {"type": "scale.type", "channel": "x"},
            {"type": "encoding.normalize", "attribute": "y", "layer": [0, 1], "options": ["x"]},
        ],
    }


def count_plot_spec(field: str, categorical: bool = False) -> Dict[str, Any]:
    """Counts per level of ``field`` as horizontal bars, selectable by click.

    With ``categorical`` the values are cast to text so numbers count as levels.
    """
    y: Dict[str, Any] = {"field": {"sql": f'CAST("{field}" AS VARCHAR)'}} if categorical else {"field": field}
    return {
        "title": field,
        "layers": [
            {
                "mark": "bar",
                "style": {"fillColor": "$markColorFade"},
                "encoding": {"y": y, "x": {"aggregate": "count"}},
            },
            {
                "mark": "bar",
                "filter": "$filter",
                "encoding": {"y": dict(y), "x": {"aggregate": "count"}},
            },
        ],
        "selection": {"select": {"encoding": "y"}},
        "widgets": [{"type": "scale.type", "channel": "x"}],
    }


async def _columns(coordinator: Coordinator, table: str) -> List[Dict[str, str]]:
    df = await coordinator.query(f'DESCRIBE "{table}"')
    return [
        {"name": str(row["column_name"]), "type": str(row["column_type"])}
        for _, row in df.iterrows()
        if not str(row["column_name"]).startswith("__")
    ]


async def _distinct_count(coordinator: Coordinator, table: str, name: str) -> int:
    df = await coordinator.query(select({"count": count_distinct(column(name))}, sql_table(table)))
    return int(df["count"].iloc[0])


async def default_charts(
    coordinator: Coordinator,
    table: str,
    include: Optional[List[str]] = None,
    exclude: Optional[List[str]] = None,
    override: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
) -> List[Dict[str, Any]]:
    """Propose chart specs for the columns of ``table``.

    ``include`` restricts the columns considered; otherwise ``exclude`` drops
    columns. ``override`` maps a column to its spec, or to None to skip it.
    """
    exclude = exclude or []
    override = override or {}
    charts: List[Dict[str, Any]] = []

    for item in await _columns(coordinator, table):
        name = item["name"]
        kind = column_kind(item["type"])
        if kind is None:
            continue
        if include is not None and name not in include:
            continue
        if name in exclude:
            continue
        if name in override:
            if override[name] is not None:
                charts.append(override[name])
            continue

        distinct = await _distinct_count(coordinator, table, name)
        if distinct <= 1:
            continue

        if kind == "nominal":
            if distinct <= COUNT_PLOT_MAX_DISTINCT:
                charts.append(count_plot_spec(name))
        elif distinct <= HISTOGRAM_MIN_DISTINCT:
            charts.append(count_plot_spec(name, categorical=True))
        else:
            charts.append(histogram_spec(name))

    logger.info("Proposed %d default charts for table %s", len(charts), table)
    return charts
