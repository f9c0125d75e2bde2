"""
SQL expression helpers on top of sqlglot.

Queries are assembled as sqlglot ASTs and rendered for DuckDB only when they
are sent to the backend. Binary arithmetic operands are parenthesized here
because sqlglot renders nodes verbatim without re-deriving precedence.
"""

from __future__ import annotations

import math
import numbers
import re
from typing import Any, Dict, Iterable, List, Optional, Union

import sqlglot
from sqlglot import exp

DIALECT = "duckdb"

Expr = exp.Expression


# ---------------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------------

def column(name: str) -> Expr:
    return exp.column(name, quoted=True)


def literal(value: Any) -> Expr:
    """Literal for a Python scalar (None becomes NULL)."""
    if value is None:
        return exp.null()
    if isinstance(value, bool):
        return exp.true() if value else exp.false()
    if isinstance(value, numbers.Real):
        if isinstance(value, numbers.Integral):
            return exp.Literal.number(int(value))
        value = float(value)
        if not math.isfinite(value):
            return exp.cast(exp.Literal.string(str(value)), "DOUBLE")
        return exp.Literal.number(value)
    return exp.Literal.string(str(value))


def parse(sql: str) -> Expr:
    return sqlglot.parse_one(sql, read=DIALECT)


def table(name: str) -> Expr:
    return exp.to_table(name, dialect=DIALECT)


def source(sql: str, alias: str = "_source") -> Expr:
    """A FROM item for a custom SQL source (a query becomes a subquery)."""
    parsed = parse(sql)
    if isinstance(parsed, exp.Query):
        return parsed.subquery(alias)
    return parsed


def replace_vars(text: str, variables: Dict[str, str]) -> str:
    """Substitute ``$name`` placeholders; unknown names are left untouched."""

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        return variables[name] if name in variables else m.group(0)

    return re.sub(r"\$([a-zA-Z][a-zA-Z0-9_]*)", _sub, text)


# ---------------------------------------------------------------------------
# Functions & operators
# ---------------------------------------------------------------------------

def fn(name: str, *args: Expr) -> Expr:
    return exp.Anonymous(this=name, expressions=list(args))


def cast(e: Expr, to: str) -> Expr:
    return exp.cast(e, exp.DataType.build(to, dialect=DIALECT))


def _operand(e: Union[Expr, float, int]) -> Expr:
    if not isinstance(e, exp.Expression):
        return literal(e)
    if isinstance(e, (exp.Binary, exp.Unary)) and not isinstance(e, exp.Paren):
        return exp.Paren(this=e)
    return e


def add(a, b) -> Expr:
    return exp.Add(this=_operand(a), expression=_operand(b))


def sub(a, b) -> Expr:
    return exp.Sub(this=_operand(a), expression=_operand(b))


def mul(a, b) -> Expr:
    return exp.Mul(this=_operand(a), expression=_operand(b))


def div(a, b) -> Expr:
    return exp.Div(this=_operand(a), expression=_operand(b))


def floor(e: Expr) -> Expr:
    return fn("floor", e)


def gt(a, b) -> Expr:
    return exp.GT(this=_operand(a), expression=_operand(b))


def eq(a, b) -> Expr:
    return exp.EQ(this=_operand(a), expression=_operand(b))


def is_finite(e: Expr) -> Expr:
    return fn("isfinite", e)


def is_null(e: Expr) -> Expr:
    return exp.Is(this=_operand(e), expression=exp.null())


def is_not_null(e: Expr) -> Expr:
    return exp.not_(is_null(e))


def is_in(e: Expr, values: Iterable[Any]) -> Expr:
    return exp.In(this=_operand(e), expressions=[literal(v) for v in values])


def is_between(e: Expr, lo: float, hi: float) -> Expr:
    return exp.Between(this=_operand(e), low=literal(lo), high=literal(hi))


def not_(e: Expr) -> Expr:
    return exp.not_(e)


def and_(*conditions: Optional[Expr]) -> Optional[Expr]:
    """AND of the given conditions; None entries are skipped, no conditions is None."""
    items = [c for c in conditions if c is not None]
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return exp.and_(*items)


def or_(*conditions: Optional[Expr]) -> Optional[Expr]:
    items = [c for c in conditions if c is not None]
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return exp.or_(*items)


def cond(condition: Expr, then: Expr, otherwise: Expr) -> Expr:
    return exp.Case().when(condition, then).else_(otherwise)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

def count() -> Expr:
    return exp.Count(this=exp.Star())


def count_distinct(e: Expr) -> Expr:
    return exp.Count(this=exp.Distinct(expressions=[e]))


def aggregate(name: str, *args: Expr, where: Optional[Expr] = None) -> Expr:
    agg = fn(name, *args)
    if where is None:
        return agg
    return exp.Filter(this=agg, expression=exp.Where(this=where))


def window_sum(e: Expr, partition_by: Expr) -> Expr:
    return exp.Window(this=exp.Sum(this=e), partition_by=[partition_by])


def double_list(values: List[float]) -> Expr:
    arr = exp.Array(expressions=[literal(float(v)) for v in values])
    return cast(arr, "DOUBLE[]")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def alias(e: Expr, name: str) -> Expr:
    return exp.alias_(e, name, quoted=True)


def select(
    entries: Dict[str, Expr],
    from_: Expr,
    *,
    where: Optional[Expr] = None,
    group_by: Optional[List[Expr]] = None,
    order_by: Optional[List[Expr]] = None,
    limit: Optional[int] = None,
) -> exp.Select:
    query = exp.select(*[alias(e, name) for name, e in entries.items()]).from_(from_)
    if where is not None:
        query = query.where(where)
    if group_by:
        query = query.group_by(*group_by)
    if order_by:
        query = query.order_by(*order_by)
    if limit is not None:
        query = query.limit(limit)
    return query


def desc(e: Expr) -> Expr:
    return exp.Ordered(this=e, desc=True)


def asc(e: Expr) -> Expr:
    return exp.Ordered(this=e, desc=False)


def to_sql(e: Union[Expr, str]) -> str:
    if isinstance(e, str):
        return e
    return e.sql(dialect=DIALECT)


def predicate_to_string(predicate: Optional[Expr]) -> str:
    """SQL text for a predicate; no predicate means "(true)"."""
    if predicate is None:
        return "(true)"
    return f"({to_sql(predicate)})"
