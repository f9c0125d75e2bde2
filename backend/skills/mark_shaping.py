"""
Mark shaping: stacking, cross completion and per-mark layer outputs.

All functions work on in-memory ``DataTable``s and return new tables.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.models import AggregateEncoding, DataTable, Layer, LayerOutputs
from core.utils import is_finite_number, structural_key

logger = logging.getLogger("uvicorn.error")

Order = Callable[[Any, Any], int]

DEFAULT_BAND_DIMENSION = {"gap": 1, "clampToRatio": 0.1}


def stack(data: DataTable, by: str, orders: Dict[str, Order]) -> DataTable:
    """Stack the value axis within each group of equal ``by`` values.

    Rows are ordered by the first comparator in ``orders`` that separates
    them, then by row index. Each value becomes a cumulative ``[start, end]``
    interval; non-finite values are skipped and their interval is None.
    """
    field = "y" if by == "x" else "x"
    if field not in data.columns:
        return data

    by_column = data.columns.get(by)
    groups: Dict[Any, List[int]] = {}
    for i in range(data.length):
        key = structural_key(by_column[i]) if by_column is not None else None
        groups.setdefault(key, []).append(i)

    def compare(i1: int, i2: int) -> int:
        for name, order in orders.items():
            column = data.columns.get(name)
            if column is None:
                continue
            r = order(column[i1], column[i2])
            if r != 0:
                return r
        return i1 - i2

    values = list(data.columns[field])
    for indices in groups.values():
        indices.sort(key=functools.cmp_to_key(compare))
        total = 0.0
        for i in indices:
            v = values[i]
            if not is_finite_number(v):
                values[i] = None
                continue
            values[i] = [total, total + v]
            total += v

    return DataTable(length=data.length, columns={**data.columns, field: values})


def complete_cross(data: DataTable, by: str, field: str, default: Any) -> DataTable:
    """Add rows so every ``by`` value appears with every combination of the other columns.

    Inserted rows carry ``default`` in ``field``.
    """
    if by not in data.columns or field not in data.columns:
        return data

    by_column = list(data.columns[by])
    field_column = list(data.columns[field])
    others: List[Tuple[str, List[Any]]] = [
        (name, list(column)) for name, column in data.columns.items() if name not in (by, field)
    ]

    by_values: Dict[Any, Any] = {}
    other_values: Dict[Any, List[Any]] = {}
    present = set()
    for i in range(data.length):
        by_key = structural_key(by_column[i])
        other_key = tuple(structural_key(column[i]) for _, column in others)
        by_values.setdefault(by_key, by_column[i])
        other_values.setdefault(other_key, [column[i] for _, column in others])
        present.add((by_key, other_key))

    for by_key, by_value in by_values.items():
        for other_key, row in other_values.items():
            if (by_key, other_key) in present:
                continue
            by_column.append(by_value)
            field_column.append(default)
            for (_, column), value in zip(others, row):
                column.append(value)

    columns = {by: by_column, field: field_column}
    columns.update(dict(others))
    return DataTable(length=len(by_column), columns=columns)


# ---------------------------------------------------------------------------
# Layer outputs
# ---------------------------------------------------------------------------

MARKS = ("bar", "point", "rect", "line", "area", "rule")
ORIENTATIONS = (None, "vertical", "horizontal")


def validate_layer(layer: Layer) -> bool:
    """False (with a warning) when the layer's mark or orientation is unknown."""
    if layer.orientation not in ORIENTATIONS:
        logger.warning("Invalid orientation: '%s'", layer.orientation)
        return False
    if layer.mark not in MARKS:
        logger.warning("Invalid mark: '%s'", layer.mark)
        return False
    return True


def infer_orientation(layer: Layer) -> str:
    """Bars and areas grow along the aggregated axis; horizontal iff x aggregates."""
    if isinstance(layer.encoding.get("x"), AggregateEncoding):
        return "horizontal"
    return "vertical"


def _style(layer: Layer, defaults: Dict[str, Any]) -> Dict[str, Any]:
    style = dict(defaults)
    if layer.style is not None:
        style.update(layer.style.model_dump(by_alias=True, exclude_unset=True))
    return style


def layer_outputs(
    layer: Layer,
    index: int,
    data: DataTable,
    orders: Dict[str, Order],
) -> Optional[LayerOutputs]:
    """Shape ``data`` for ``layer``'s mark; None (with a warning) for invalid layers."""
    if not validate_layer(layer):
        return None

    common: Dict[str, Any] = {
        "key": str(index),
        "z_index": layer.z_index if layer.z_index is not None else 0,
        "interpolate": layer.interpolate or "linear",
        "orientation": layer.orientation,
        "x_dimension": layer.width,
        "y_dimension": layer.height,
        "data": data,
    }
    mark = layer.mark

    if mark == "bar":
        orientation = layer.orientation or infer_orientation(layer)
        if orientation == "horizontal":
            common["data"] = stack(data, "y", orders)
            common["y_dimension"] = layer.height if layer.height is not None else dict(DEFAULT_BAND_DIMENSION)
        else:
            common["data"] = stack(data, "x", orders)
            common["x_dimension"] = layer.width if layer.width is not None else dict(DEFAULT_BAND_DIMENSION)
        common["orientation"] = orientation
        return LayerOutputs(primitive="rect", style=_style(layer, {"fillColor": "$encoding"}), **common)

    if mark in ("point", "rect"):
        return LayerOutputs(primitive=mark, style=_style(layer, {"fillColor": "$encoding"}), **common)

    if mark == "line":
        defaults = {"strokeColor": "$encoding", "strokeWidth": 2, "strokeJoin": "round", "strokeCap": "round"}
        return LayerOutputs(primitive="line", style=_style(layer, defaults), **common)

    if mark == "area":
        orientation = layer.orientation or infer_orientation(layer)
        if orientation == "horizontal":
            common["data"] = stack(complete_cross(data, "y", "x", 0), "y", orders)
        else:
            common["data"] = stack(complete_cross(data, "x", "y", 0), "x", orders)
        common["orientation"] = orientation
        return LayerOutputs(primitive="area", style=_style(layer, {"fillColor": "$encoding"}), **common)

    # rule
    if layer.orientation == "vertical":
        common["x_dimension"] = 0
    elif layer.orientation == "horizontal":
        common["y_dimension"] = 0
    return LayerOutputs(primitive="rule", style=_style(layer, {"strokeColor": "$encoding", "strokeWidth": 2}), **common)
