"""
Encoding resolution.

Compiles one channel encoding of a layer into the pieces a layer query needs:
a select expression, group-by expressions, a scale hint, a client-side value
mapper and an ordering comparator.

Resolution is two-pass. :func:`has_aggregate_or_bin` scans the layer first;
when any encoding aggregates or bins, the layer's query is grouped, so every
channel-bound field is binned (implicitly if needed) and raw fields join the
group-by. :func:`build_encoding` consumes that flag and is otherwise a pure
function of the encoding.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlglot import exp

from core.config import ECDF_QUANTILE_COUNT, OTHER_BIN_COUNT, POSITION_BIN_COUNT
from core.context import BuildContext
from core.models import (
    AGGREGATE_FUNCTIONS,
    AggregateEncoding,
    BinOptions,
    Channel,
    Encoding,
    FieldEncoding,
    Layer,
    ScaleHints,
    SqlExpr,
    SQLField,
    ValueEncoding,
)
from core.sql import (
    aggregate,
    cast,
    count,
    count_distinct,
    double_list,
    fn,
    is_between,
    is_finite,
    literal,
    parse,
    replace_vars,
)
from core.utils import is_finite_number
from skills.binning import infer_aggregate
from skills.field_stats import field_stats_key

logger = logging.getLogger("uvicorn.error")


# aggregate name -> DuckDB aggregate function
NUMERICAL_AGGREGATES: Dict[str, str] = {
    "min": "min",
    "max": "max",
    "mean": "avg",
    "average": "avg",
    "median": "median",
    "stdev": "stddev_samp",
    "stdevp": "stddev_pop",
    "variance": "var_samp",
    "variancep": "var_pop",
    "sum": "sum",
    "product": "product",
    "quantile": "quantile_cont",
}

POSITION_CHANNELS = ("x", "y")


class EncodingResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    select: Optional[exp.Expression] = None
    scale: Optional[ScaleHints] = None
    normalize: Optional[str] = None
    grouping: List[exp.Expression] = Field(default_factory=list)
    mapper: Optional[Callable[[Any], Any]] = None
    order: Optional[Callable[[Any, Any], int]] = None


def channel_for_attribute(attribute: str) -> Optional[Channel]:
    if attribute in ("x", "x1", "x2"):
        return "x"
    if attribute in ("y", "y1", "y2"):
        return "y"
    if attribute in ("color", "size"):
        return attribute
    return None


def has_aggregate_or_bin(layer: Layer) -> bool:
    """True when the layer's query must be grouped."""
    for encoding in layer.encoding.values():
        if isinstance(encoding, AggregateEncoding):
            return True
        if isinstance(encoding, FieldEncoding) and encoding.bin is not None:
            return True
    return False


def field_title(field: SQLField) -> str:
    return field if isinstance(field, str) else field.sql


def quantiles_expr() -> exp.Expression:
    return double_list([i / ECDF_QUANTILE_COUNT for i in range(ECDF_QUANTILE_COUNT + 1)])


def quantitative_predicate(field: exp.Expression) -> Callable[[Any], Optional[exp.Expression]]:
    """Predicate builder for a continuous channel: ``[lo, hi]`` becomes BETWEEN."""

    def predicate(v: Any) -> Optional[exp.Expression]:
        if isinstance(v, (list, tuple)) and len(v) == 2 and is_finite_number(v[0]) and is_finite_number(v[1]):
            return is_between(field, min(v), max(v))
        return None

    return predicate


# ---------------------------------------------------------------------------
# Per encoding kind
# ---------------------------------------------------------------------------

def _aggregate_encoding(ctx: BuildContext, encoding: AggregateEncoding) -> Optional[EncodingResult]:
    name = encoding.aggregate

    if isinstance(name, SqlExpr):
        sql = replace_vars(name.sql, {"table": ctx.context.table, "filter": "(true)"})
        return EncodingResult(
            select=parse(sql),
            scale=ScaleHints(kind="quantitative"),
            normalize=encoding.normalize,
        )

    if name == "count":
        return EncodingResult(
            select=count(),
            scale=ScaleHints(kind="quantitative", title="Count", include_zero=True),
            normalize=encoding.normalize,
        )

    if name == "ecdf-rank":
        return EncodingResult(
            select=fn("unnest", quantiles_expr()),
            scale=ScaleHints(kind="quantitative", domain=[0, 1], title="Quantile"),
            normalize=encoding.normalize,
        )

    if name not in AGGREGATE_FUNCTIONS:
        logger.warning("Invalid spec: unknown aggregate '%s'", name)
        return None

    if encoding.field is None:
        logger.warning("Invalid spec: aggregate '%s' requires a field", name)
        return None

    expr = ctx.field_expr(encoding.field)
    title = field_title(encoding.field)

    if name == "distinct":
        return EncodingResult(
            select=count_distinct(expr),
            scale=ScaleHints(kind="quantitative", title=f"DISTINCT({title})", include_zero=True),
            normalize=encoding.normalize,
        )

    if name == "ecdf-value":
        value = cast(expr, "DOUBLE")
        return EncodingResult(
            select=fn("unnest", fn("quantile_disc", value, quantiles_expr())),
            scale=ScaleHints(kind="quantitative", title=title, predicate=quantitative_predicate(value)),
            normalize=encoding.normalize,
        )

    args = [expr]
    if name == "quantile":
        args.append(literal(encoding.quantile if encoding.quantile is not None else 0.5))
    return EncodingResult(
        select=aggregate(NUMERICAL_AGGREGATES[name], *args, where=is_finite(expr)),
        scale=ScaleHints(
            kind="quantitative",
            title=f"{name.upper()}({title})",
            predicate=quantitative_predicate(expr),
        ),
        normalize=encoding.normalize,
    )


def _field_encoding(
    ctx: BuildContext,
    source: exp.Expression,
    channel: Optional[Channel],
    encoding: FieldEncoding,
    fields_in_group_by: bool,
) -> Optional[EncodingResult]:
    bin = encoding.bin
    if bin is None and fields_in_group_by and channel is not None:
        bin = BinOptions()

    stats = ctx.stats.get(field_stats_key(source, encoding.field))
    if stats is None:
        logger.info("Field '%s' cannot be visualized (unsupported type)", field_title(encoding.field))
        return None

    title = field_title(encoding.field)

    if bin is not None:
        scale_spec = ctx.spec.scale.get(channel) if channel is not None else None
        desired = bin.desired_count or (POSITION_BIN_COUNT if channel in POSITION_CHANNELS else OTHER_BIN_COUNT)
        info = infer_aggregate(
            stats,
            scale_type=scale_spec.type if scale_spec is not None else None,
            bin_count=desired,
            constant=scale_spec.constant if scale_spec is not None else None,
        )
        if info is None:
            logger.warning("Invalid spec: unsupported data type for field '%s'", title)
            return None
        hints = None
        if channel is not None:
            hints = ScaleHints(
                kind="nominal" if info.scale.type == "band" else "quantitative",
                type=info.scale.type,
                domain=list(info.scale.domain),
                special_values=list(info.scale.special_values),
                constant=info.scale.constant,
                title=title,
                predicate=info.predicate,
            )
        return EncodingResult(
            select=info.select,
            grouping=[info.select],
            scale=hints,
            mapper=info.mapper,
            order=info.order,
        )

    select = ctx.field_expr(encoding.field)
    if stats.quantitative is not None:
        hints = ScaleHints(kind="quantitative", title=title, predicate=quantitative_predicate(select))
    else:
        hints = ScaleHints(kind="nominal", title=title)
    return EncodingResult(
        select=select,
        grouping=[select] if fields_in_group_by else [],
        scale=hints,
    )


def _value_encoding(encoding: ValueEncoding) -> EncodingResult:
    value = encoding.value
    if isinstance(value, str):
        hints: Optional[ScaleHints] = ScaleHints(kind="nominal", domain=[value])
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        hints = ScaleHints(kind="quantitative", domain=[value])
    else:
        hints = None
    return EncodingResult(mapper=lambda _: value, scale=hints)


def build_encoding(
    ctx: BuildContext,
    source: exp.Expression,
    channel: Optional[Channel],
    encoding: Encoding,
    fields_in_group_by: bool,
) -> Optional[EncodingResult]:
    """Resolve one encoding; None when it cannot be used (the problem is logged)."""
    if isinstance(encoding, AggregateEncoding):
        return _aggregate_encoding(ctx, encoding)
    if isinstance(encoding, FieldEncoding):
        return _field_encoding(ctx, source, channel, encoding, fields_in_group_by)
    if isinstance(encoding, ValueEncoding):
        return _value_encoding(encoding)
    return None
