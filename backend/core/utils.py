"""
Shared utility helpers.

Pure functions: no queries or I/O.
"""

from __future__ import annotations

import copy
import json
import math
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from core.models import DataTable


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def is_finite_number(value: Any) -> bool:
    """True for real, finite numbers (bools excluded)."""
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float, np.integer, np.floating)):
        return math.isfinite(float(value))
    return False


def is_missing(value: Any) -> bool:
    """None or a float NaN (what DuckDB NULLs become in a DataFrame)."""
    if value is None:
        return True
    if isinstance(value, (float, np.floating)):
        return math.isnan(float(value))
    return False


def finite_extent(values) -> Tuple[Optional[float], Optional[float]]:
    """(min, max) over finite numbers in ``values``; (None, None) if there are none."""
    lo: Optional[float] = None
    hi: Optional[float] = None
    for v in values:
        if not is_finite_number(v):
            continue
        v = float(v)
        if lo is None or v < lo:
            lo = v
        if hi is None or v > hi:
            hi = v
    return lo, hi


def flatten_values(values: List[Any]) -> List[Any]:
    """Flatten one level of list/tuple values (interval cells become two numbers)."""
    out: List[Any] = []
    for v in values:
        if isinstance(v, (list, tuple)):
            out.extend(v)
        else:
            out.append(v)
    return out


# ---------------------------------------------------------------------------
# Structural keys & equality
# ---------------------------------------------------------------------------

_NAN_KEY = ("__nan__",)


def structural_key(value: Any) -> Any:
    """Canonical hashable key for a cell value (lists become tuples, NaN is one key)."""
    if isinstance(value, (list, tuple)):
        return tuple(structural_key(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, structural_key(v)) for k, v in value.items()))
    if isinstance(value, (float, np.floating)) and math.isnan(float(value)):
        return _NAN_KEY
    if isinstance(value, np.generic):
        return value.item()
    return value


def deep_equals(a: Any, b: Any) -> bool:
    return structural_key(a) == structural_key(b)


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

def deep_merge(base: Any, update: Any) -> Any:
    """Recursively merge ``update`` into a copy of ``base``.

    Dicts merge key by key; any other value (lists included) replaces.
    """
    if not isinstance(base, dict) or not isinstance(update, dict):
        return copy.deepcopy(update)
    result = copy.deepcopy(base)
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# DataFrame safety
# ---------------------------------------------------------------------------

def _python_value(v: Any) -> Any:
    if isinstance(v, np.generic):
        return v.item()
    if isinstance(v, np.ndarray):
        return [_python_value(x) for x in v.tolist()]
    if v is pd.NA or v is pd.NaT:
        return None
    return v


def df_to_table(df: pd.DataFrame) -> DataTable:
    """Convert a query result into a column-oriented DataTable."""
    columns: Dict[str, List[Any]] = {}
    for name in df.columns:
        columns[str(name)] = [_python_value(v) for v in df[name].tolist()]
    return DataTable(length=len(df), columns=columns)


def json_safe(value: Any) -> Any:
    """Replace +/-inf and NaN with None (recursively) so JSON serialization works."""
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, (float, np.floating)) and not math.isfinite(float(value)):
        return None
    return _python_value(value)


def json_dumps_safe(value: Any) -> str:
    return json.dumps(json_safe(value), default=str)
