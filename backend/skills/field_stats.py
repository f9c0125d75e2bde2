"""
Field statistics.

Distribution summaries for one field of a source: quantitative fields get
finite-value extent, mean, median and non-finite counts; text-like fields
get their most frequent levels plus null and "other" counts. Other storage
types (dates, lists, structs) are not summarized.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Dict, Optional

from sqlglot import exp

from core.config import STATS_TOP_K
from core.context import BuildContext
from core.coordinator import Coordinator
from core.models import FieldEncoding, FieldStats, Level, NominalStats, QuantitativeStats, SQLField
from core.sql import (
    aggregate,
    and_,
    asc,
    cast,
    cond,
    count,
    count_distinct,
    desc,
    gt,
    is_finite,
    is_in,
    is_not_null,
    is_null,
    literal,
    not_,
    or_,
    select,
    to_sql,
)
from core.utils import is_missing

logger = logging.getLogger("uvicorn.error")

_NUMERIC_TYPES = re.compile(
    r"^(TINYINT|SMALLINT|INTEGER|INT|BIGINT|HUGEINT|UTINYINT|USMALLINT|UINTEGER|UBIGINT|UHUGEINT"
    r"|FLOAT|REAL|DOUBLE|DECIMAL(\(.*\))?|NUMERIC(\(.*\))?)$"
)
_TEXT_TYPES = re.compile(r"^(VARCHAR|TEXT|STRING|BOOLEAN|BOOL|UUID|ENUM\(.*\))$")


def column_kind(column_type: str) -> Optional[str]:
    """Map a DuckDB column type to "quantitative", "nominal" or None."""
    t = column_type.strip().upper()
    if _NUMERIC_TYPES.match(t):
        return "quantitative"
    if _TEXT_TYPES.match(t):
        return "nominal"
    return None


def _float(value) -> Optional[float]:
    return None if is_missing(value) else float(value)


# ---------------------------------------------------------------------------
# Single field
# ---------------------------------------------------------------------------

async def compute_field_stats(
    coordinator: Coordinator,
    source: exp.Expression,
    field: exp.Expression,
) -> Optional[FieldStats]:
    """Collect distribution stats for ``field`` over ``source``.

    Returns None when the field's storage type cannot be summarized.
    Query failures propagate.
    """
    described = await coordinator.query("DESCRIBE " + to_sql(select({"field": field}, source)))
    if len(described) == 0:
        return None
    kind = column_kind(str(described["column_type"].iloc[0]))

    if kind == "quantitative":
        value = cast(field, "DOUBLE")
        r1 = await coordinator.query(
            select(
                {
                    "count": count(),
                    "min": aggregate("min", value),
                    "max": aggregate("max", value),
                    "mean": aggregate("avg", value),
                    "median": aggregate("median", value),
                    "min_positive": aggregate("min", cond(gt(value, 0), value, literal(None))),
                },
                source,
                where=is_finite(value),
            )
        )
        r2 = await coordinator.query(
            select(
                {"count_non_finite": count()},
                source,
                where=or_(not_(is_finite(value)), is_null(value)),
            )
        )
        row = r1.iloc[0]
        return FieldStats(
            field=field,
            quantitative=QuantitativeStats(
                count=int(row["count"]),
                min=_float(row["min"]),
                max=_float(row["max"]),
                mean=_float(row["mean"]),
                median=_float(row["median"]),
                min_positive=_float(row["min_positive"]),
                count_non_finite=int(r2["count_non_finite"].iloc[0]),
            ),
        )

    if kind == "nominal":
        value = cast(field, "TEXT")
        levels_df = await coordinator.query(
            select(
                {"value": value, "count": count()},
                source,
                where=is_not_null(value),
                group_by=[value],
                order_by=[desc(count()), asc(value)],
                limit=STATS_TOP_K,
            )
        )
        levels = [Level(value=str(v), count=int(c)) for v, c in zip(levels_df["value"], levels_df["count"])]

        nulls = await coordinator.query(select({"count": count()}, source, where=is_null(value)))

        outside = None
        if levels:
            outside = not_(is_in(value, [level.value for level in levels]))
        others = await coordinator.query(
            select(
                {"other_count": count(), "num_other_levels": count_distinct(value)},
                source,
                where=and_(is_not_null(value), outside),
            )
        )
        return FieldStats(
            field=field,
            nominal=NominalStats(
                levels=levels,
                num_other_levels=int(others["num_other_levels"].iloc[0]),
                other_count=int(others["other_count"].iloc[0]),
                null_count=int(nulls["count"].iloc[0]),
            ),
        )

    logger.info("Field %s has unsupported type for statistics", to_sql(field))
    return None


# ---------------------------------------------------------------------------
# All fields of a chart
# ---------------------------------------------------------------------------

def field_stats_key(source: exp.Expression, field: SQLField) -> str:
    raw = field if isinstance(field, str) else {"sql": field.sql}
    return json.dumps([to_sql(source), raw])


def _stats_task(ctx: BuildContext, key: str, source: exp.Expression, field: SQLField) -> asyncio.Future:
    cache = ctx.context.cache
    cache_key = "field-stats/" + key
    task = cache.get(cache_key)
    if task is None or task.cancelled():
        task = asyncio.ensure_future(compute_field_stats(ctx.context.coordinator, source, ctx.field_expr(field)))
        cache.set(cache_key, task)
    return task


async def compute_all_field_stats(ctx: BuildContext) -> Dict[str, Optional[FieldStats]]:
    """Stats for every non-aggregate field encoding of the chart, keyed by :func:`field_stats_key`.

    Computations are shared through the context cache; a failed computation is
    evicted so that a later build retries it, and the failure propagates.
    """
    tasks: Dict[str, asyncio.Future] = {}
    for layer in ctx.spec.layers:
        source = ctx.from_expr(layer.from_)
        for encoding in layer.encoding.values():
            if not isinstance(encoding, FieldEncoding):
                continue
            key = field_stats_key(source, encoding.field)
            if key not in tasks:
                tasks[key] = _stats_task(ctx, key, source, encoding.field)

    # Cached tasks are shared with other charts; cancelling this build must not cancel them.
    keys = list(tasks)
    results = await asyncio.gather(*(asyncio.shield(task) for task in tasks.values()), return_exceptions=True)
    failure: Optional[BaseException] = None
    stats: Dict[str, Optional[FieldStats]] = {}
    for key, result in zip(keys, results):
        if isinstance(result, BaseException):
            if ctx.context.cache.get("field-stats/" + key) is tasks[key]:
                ctx.context.cache.evict("field-stats/" + key)
            failure = failure or result
        else:
            stats[key] = result
    if failure is not None:
        raise failure
    return stats
