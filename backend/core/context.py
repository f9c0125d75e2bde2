"""
Shared chart context: the coordinator, the dataset table, the cross-filter
and a cache of intermediate results, shared by every chart of a workspace.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, TypeVar

from sqlglot import exp

from core.coordinator import Coordinator
from core.crossfilter import CrossFilter
from core.models import ChartSpec, SQLField, SQLTable
from core.sql import column, parse, predicate_to_string, replace_vars, source
from core.sql import table as sql_table

T = TypeVar("T")


class ContextCache:
    """Keyed cache kept for the lifetime of the hosting workspace."""

    def __init__(self) -> None:
        self._contents: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._contents.get(key)

    def set(self, key: str, value: Any) -> None:
        self._contents[key] = value

    def value(self, key: str, factory: Callable[[], T]) -> T:
        if key not in self._contents:
            self._contents[key] = factory()
        return self._contents[key]

    def evict(self, key: str) -> None:
        self._contents.pop(key, None)

    def clear(self) -> None:
        self._contents.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._contents

    def __len__(self) -> int:
        return len(self._contents)


class ChartContext:
    def __init__(
        self,
        coordinator: Coordinator,
        table: str,
        filter: Optional[CrossFilter] = None,
        cache: Optional[ContextCache] = None,
    ) -> None:
        self.coordinator = coordinator
        self.table = table
        self.filter = filter if filter is not None else CrossFilter()
        self.cache = cache if cache is not None else ContextCache()


class BuildContext:
    """Per-build view of a chart: the shared context, the spec and its field stats."""

    def __init__(self, context: ChartContext, spec: ChartSpec, stats: Optional[Dict[str, Any]] = None) -> None:
        self.context = context
        self.spec = spec
        self.stats: Dict[str, Any] = stats or {}

    def field_expr(self, field: SQLField) -> exp.Expression:
        if isinstance(field, str):
            return column(field)
        return parse(replace_vars(field.sql, {"table": self.context.table, "filter": "(true)"}))

    def from_expr(self, table: Optional[SQLTable], predicate: Optional[exp.Expression] = None) -> exp.Expression:
        """FROM item for a layer source; ``$filter`` in custom SQL becomes ``predicate``."""
        if table is None:
            table = self.context.table
        if isinstance(table, str):
            return sql_table(table)
        variables = {"table": self.context.table, "filter": predicate_to_string(predicate)}
        return source(replace_vars(table.sql, variables))
