"""
Layer query builder.

Builds one mark layer: resolves its encodings, assembles the SQL query (or a
one-row table for all-constant layers), and wires a live ``QueryClient``
whose results are mapped, shaped and published to the layer's output cell.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field
from sqlglot import exp

from core.context import BuildContext
from core.coordinator import QueryClient
from core.models import DataTable, Layer, ScaleHints, SqlExpr
from core.reactive import Cell
from core.sql import column, div, select, window_sum
from core.utils import df_to_table
from skills.encoding import build_encoding, channel_for_attribute, has_aggregate_or_bin
from skills.mark_shaping import layer_outputs, validate_layer
from skills.scale_inference import merge_hints_into

logger = logging.getLogger("uvicorn.error")

FILTER_PLACEHOLDER = "$filter"


class LayerBuild(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    outputs: Cell
    client: Optional[QueryClient] = None
    scale_hints: Dict[str, ScaleHints] = Field(default_factory=dict)


def uses_filter(layer: Layer) -> bool:
    """A layer follows the cross-filter when it opts in or its custom SQL references it."""
    if layer.filter == FILTER_PLACEHOLDER:
        return True
    return isinstance(layer.from_, SqlExpr) and FILTER_PLACEHOLDER in layer.from_.sql


def build_layer(
    ctx: BuildContext,
    layer: Layer,
    index: int,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> LayerBuild:
    if not validate_layer(layer):
        return LayerBuild(outputs=Cell(None))

    scale_hints: Dict[str, ScaleHints] = {}
    mappers: Dict[str, Callable[[Any], Any]] = {}
    selects: Dict[str, exp.Expression] = {}
    normalize: Dict[str, str] = {}
    group_bys: List[exp.Expression] = []
    orders: Dict[str, Callable[[Any, Any], int]] = {}

    source = ctx.from_expr(layer.from_)
    grouped = has_aggregate_or_bin(layer)

    for attribute, encoding in layer.encoding.items():
        channel = channel_for_attribute(attribute)
        r = build_encoding(ctx, source, channel, encoding, grouped)
        if r is None:
            continue
        if r.select is not None:
            selects[attribute] = r.select
        if r.normalize is not None:
            normalize[attribute] = r.normalize
        group_bys.extend(r.grouping)
        if r.mapper is not None:
            mappers[attribute] = r.mapper
        if r.order is not None:
            orders[attribute] = r.order
        if channel is not None and r.scale is not None:
            merge_hints_into(scale_hints, {channel: r.scale})

    for attribute, target in list(normalize.items()):
        if target not in selects:
            logger.warning("Invalid spec: cannot normalize '%s' by missing attribute '%s'", attribute, target)
            del normalize[attribute]

    if not selects:
        table = DataTable(length=1, columns={key: [mapper(None)] for key, mapper in mappers.items()})
        return LayerBuild(outputs=Cell(layer_outputs(layer, index, table, orders)), scale_hints=scale_hints)

    outputs: Cell = Cell(None)
    filtered = uses_filter(layer)

    def query(predicate: Optional[exp.Expression]) -> exp.Expression:
        base = select(
            selects,
            ctx.from_expr(layer.from_, predicate),
            where=predicate if layer.filter == FILTER_PLACEHOLDER else None,
            group_by=group_bys,
        )
        if not normalize:
            return base
        entries: Dict[str, exp.Expression] = {}
        for key in selects:
            if key in normalize:
                entries[key] = div(column(key), window_sum(column(key), column(normalize[key])))
            else:
                entries[key] = column(key)
        return select(entries, base.subquery("_layer"))

    def on_result(df: pd.DataFrame) -> None:
        table = df_to_table(df)
        columns = dict(table.columns)
        for key, mapper in mappers.items():
            if key in columns:
                columns[key] = [mapper(v) for v in columns[key]]
            else:
                columns[key] = [mapper(None) for _ in range(table.length)]
        outputs.set(layer_outputs(layer, index, DataTable(length=table.length, columns=columns), orders))

    client = QueryClient(
        query,
        on_result,
        filter_by=ctx.context.filter if filtered else None,
        on_error=on_error,
        name=f"layer {index}",
    )
    return LayerBuild(outputs=outputs, client=client, scale_hints=scale_hints)
