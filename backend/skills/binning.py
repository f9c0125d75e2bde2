"""
Binning and aggregate inference.

Turns field statistics into a discretization plan:

* quantitative fields are cut into "nice" bins in the scale's transformed
  space (linear, log10 or symlog); values that cannot be placed (non-finite,
  null, non-positive on a log scale) fall into the "n/a" bucket.
* nominal fields keep their most frequent levels; the rest fold into an
  "(N others)" bucket and nulls into "(null)".

Each plan carries the SQL select expression, a scale description, a mapper
from query output to display value, a predicate builder for selections and
a comparator that fixes the display (and stacking) order.
"""

from __future__ import annotations

import functools
import math
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlglot import exp

from core.config import (
    BIN_INDEX_EPSILON,
    DEFAULT_SYMLOG_CONSTANT,
    NA_LABEL,
    NOMINAL_BIN_COUNT,
    NULL_LABEL,
    POSITION_BIN_COUNT,
)
from core.models import FieldStats, QuantitativeStats, ScaleConfig
from core.sql import (
    add,
    and_,
    cast,
    cond,
    div,
    eq,
    floor,
    fn,
    gt,
    is_between,
    is_finite,
    is_in,
    is_not_null,
    is_null,
    literal,
    mul,
    not_,
    or_,
    sub,
)
from core.utils import is_finite_number, is_missing


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


# ---------------------------------------------------------------------------
# Scale transforms
# ---------------------------------------------------------------------------

class ScaleTransform:
    """Forward/reverse mapping into the space where bins are evenly spaced."""

    def __init__(self, type: str = "linear", constant: Optional[float] = None) -> None:
        if type not in ("linear", "log", "symlog"):
            type = "linear"
        self.type = type
        self.constant = constant if constant is not None else (DEFAULT_SYMLOG_CONSTANT if type == "symlog" else None)

    def forward(self, x: float) -> float:
        if self.type == "log":
            return math.log10(x)
        if self.type == "symlog":
            return math.copysign(math.log1p(abs(x) / self.constant), x)
        return x

    def reverse(self, y: float) -> float:
        if self.type == "log":
            return 10.0 ** y
        if self.type == "symlog":
            return math.copysign(math.expm1(abs(y)) * self.constant, y)
        return y

    def expr(self, e: exp.Expression) -> exp.Expression:
        if self.type == "log":
            return fn("log10", e)
        if self.type == "symlog":
            return mul(fn("sign", e), fn("ln", add(1, div(fn("abs", e), self.constant))))
        return e


def nice_step(raw: float) -> float:
    """Round a raw bin width to 1, 2, 5 or 10 times a power of ten."""
    if not math.isfinite(raw) or raw <= 0:
        return 1.0
    power = 10.0 ** math.floor(math.log10(raw))
    ratio = raw / power
    if ratio >= math.sqrt(50):
        factor = 10
    elif ratio >= math.sqrt(10):
        factor = 5
    elif ratio >= math.sqrt(2):
        factor = 2
    else:
        factor = 1
    return factor * power


# ---------------------------------------------------------------------------
# Quantitative binning
# ---------------------------------------------------------------------------

class Binning:
    def __init__(self, transform: ScaleTransform, start: float, step: float) -> None:
        self.transform = transform
        self.start = start
        self.step = step

    def value_to_bin_index(self, x: float) -> int:
        return math.floor((self.transform.forward(x) - self.start) / self.step + BIN_INDEX_EPSILON)

    def bin_index_to_value(self, index: int) -> float:
        return self.transform.reverse(index * self.step + self.start)

    def index_expr(self, value: exp.Expression) -> exp.Expression:
        """SQL twin of :meth:`value_to_bin_index` (NULL where no bin applies)."""
        index = floor(add(div(sub(self.transform.expr(value), self.start), self.step), BIN_INDEX_EPSILON))
        valid = is_finite(value)
        if self.transform.type == "log":
            valid = and_(valid, gt(value, 0))
        return cond(valid, index, literal(None))


def _value_range(stats: QuantitativeStats, scale_type: str):
    if scale_type == "log":
        low = stats.min_positive
        high = stats.max if stats.max is not None and stats.max > 0 else low
        if low is None:
            return 1.0, 10.0
        return low, high
    if stats.count == 0 or stats.min is None or stats.max is None:
        return 0.0, 1.0
    return stats.min, stats.max


def infer_binning(
    stats: QuantitativeStats,
    scale_type: Optional[str] = None,
    desired_count: Optional[int] = None,
    constant: Optional[float] = None,
) -> Binning:
    transform = ScaleTransform(scale_type or "linear", constant)
    desired = desired_count if desired_count and desired_count > 0 else POSITION_BIN_COUNT
    low, high = _value_range(stats, transform.type)
    lo = transform.forward(low)
    hi = transform.forward(high)
    span = hi - lo
    if span <= 0:
        span = 1.0
    step = nice_step(span / desired)
    start = math.floor(lo / step) * step
    return Binning(transform, start, step)


# ---------------------------------------------------------------------------
# Aggregate info
# ---------------------------------------------------------------------------

class AggregateInfo(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    select: exp.Expression
    scale: ScaleConfig
    mapper: Callable[[Any], Any]
    predicate: Callable[[Any], Optional[exp.Expression]]
    order: Callable[[Any, Any], int]
    binning: Optional[Binning] = None
    bin0: Optional[int] = None
    bin1: Optional[int] = None

    def sort_key(self) -> Callable[[Any], Any]:
        return functools.cmp_to_key(self.order)


def _quantitative_aggregate(
    field: exp.Expression,
    stats: QuantitativeStats,
    scale_type: Optional[str],
    bin_count: Optional[int],
    constant: Optional[float],
) -> AggregateInfo:
    binning = infer_binning(stats, scale_type, bin_count, constant)
    transform = binning.transform
    value = cast(field, "DOUBLE")

    low, high = _value_range(stats, transform.type)
    bin0 = binning.value_to_bin_index(low)
    bin1 = binning.value_to_bin_index(high)
    domain = [binning.bin_index_to_value(bin0), binning.bin_index_to_value(bin1 + 1)]

    has_na = stats.count_non_finite > 0
    if transform.type == "log" and stats.min is not None and stats.min <= 0:
        has_na = True

    na_predicate = or_(not_(is_finite(value)), is_null(value))
    if transform.type == "log":
        na_predicate = or_(na_predicate, not_(gt(value, 0)))

    def predicate(v: Any) -> Optional[exp.Expression]:
        if isinstance(v, str):
            return na_predicate if v == NA_LABEL else None
        if isinstance(v, (list, tuple)):
            if len(v) == 2 and is_finite_number(v[0]) and is_finite_number(v[1]):
                return is_between(value, min(v), max(v))
            return or_(*[predicate(item) for item in v])
        return None

    def mapper(v: Any) -> Any:
        if is_missing(v):
            return NA_LABEL
        index = int(v)
        return [binning.bin_index_to_value(index), binning.bin_index_to_value(index + 1)]

    def order(a: Any, b: Any) -> int:
        ka = (0, a[0]) if isinstance(a, (list, tuple)) and a else (1, 0.0)
        kb = (0, b[0]) if isinstance(b, (list, tuple)) and b else (1, 0.0)
        return _cmp(ka, kb)

    return AggregateInfo(
        select=binning.index_expr(value),
        scale=ScaleConfig(
            type=transform.type,
            constant=transform.constant,
            domain=domain,
            special_values=[NA_LABEL] if has_na else [],
        ),
        mapper=mapper,
        predicate=predicate,
        order=order,
        binning=binning,
        bin0=bin0,
        bin1=bin1,
    )


# ---------------------------------------------------------------------------
# Nominal levels
# ---------------------------------------------------------------------------

def other_label(num_other_levels: int) -> str:
    return f"({num_other_levels:,} others)"


def _nominal_aggregate(field: exp.Expression, stats: FieldStats, bin_count: Optional[int]) -> AggregateInfo:
    nominal = stats.nominal
    limit = bin_count if bin_count and bin_count > 0 else NOMINAL_BIN_COUNT
    levels = list(nominal.levels)
    num_other_levels = nominal.num_other_levels
    other_count = nominal.other_count
    if len(levels) > limit:
        num_other_levels += len(levels) - limit
        other_count += sum(level.count for level in levels[limit:])
        levels = levels[:limit]

    other_repr = other_label(num_other_levels)
    level_values = [level.value for level in levels]
    special_values: List[str] = []
    if other_count > 0:
        special_values.append(other_repr)
    if nominal.null_count > 0:
        special_values.append(NULL_LABEL)

    value = cast(field, "TEXT")
    select = cond(is_null(value), literal(NULL_LABEL), literal(other_repr))
    if level_values:
        select = cond(is_in(value, level_values), value, select)

    def single(v: str) -> Optional[exp.Expression]:
        if v == NULL_LABEL:
            return is_null(value)
        if v == other_repr:
            if not level_values:
                return is_not_null(value)
            return and_(not_(is_in(value, level_values)), is_not_null(value))
        return eq(value, literal(v))

    def predicate(v: Any) -> Optional[exp.Expression]:
        if isinstance(v, (list, tuple)):
            return or_(*[single(item) for item in v if isinstance(item, str)])
        if isinstance(v, str):
            return single(v)
        return None

    def rank(v: Any) -> int:
        if v in level_values:
            return level_values.index(v)
        if v in special_values:
            return len(level_values) + special_values.index(v)
        return len(level_values) + len(special_values)

    return AggregateInfo(
        select=select,
        scale=ScaleConfig(type="band", domain=level_values, special_values=special_values),
        mapper=lambda v: v,
        predicate=predicate,
        order=lambda a, b: _cmp(rank(a), rank(b)),
    )


def infer_aggregate(
    stats: FieldStats,
    scale_type: Optional[str] = None,
    bin_count: Optional[int] = None,
    constant: Optional[float] = None,
) -> Optional[AggregateInfo]:
    """Binning plan for ``stats``; None when the field has no usable statistics."""
    if stats.quantitative is not None:
        return _quantitative_aggregate(stats.field, stats.quantitative, scale_type, bin_count, constant)
    if stats.nominal is not None:
        return _nominal_aggregate(stats.field, stats, bin_count)
    return None
