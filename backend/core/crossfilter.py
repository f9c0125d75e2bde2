"""
Shared cross-filter selection.

A cross-filter holds at most one clause per source. The predicate a client
sees combines every clause except the ones that client itself produced, so
a chart is filtered by the other charts' selections but not by its own.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field
from sqlglot import exp

from core.sql import and_, predicate_to_string

logger = logging.getLogger("uvicorn.error")


class SelectionSource:
    """Identity of one clause writer; ``reset`` is invoked by :meth:`CrossFilter.reset`."""

    def __init__(self, name: str, on_reset: Optional[Callable[[], None]] = None) -> None:
        self.name = name
        self._on_reset = on_reset

    def reset(self) -> None:
        if self._on_reset is not None:
            self._on_reset()

    def __repr__(self) -> str:
        return f"SelectionSource({self.name!r})"


class Clause(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    source: Any
    clients: Set[Any] = Field(default_factory=set)
    value: Any = None
    predicate: Optional[exp.Expression] = None


Listener = Callable[[Optional[Clause]], None]


class CrossFilter:
    def __init__(self) -> None:
        self._clauses: List[Clause] = []
        self._listeners: List[Listener] = []
        self._activate_listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Clauses
    # ------------------------------------------------------------------

    @property
    def clauses(self) -> List[Clause]:
        return list(self._clauses)

    def update(self, clause: Clause) -> None:
        """Replace the clause of ``clause.source``; a None predicate only removes."""
        self._clauses = [c for c in self._clauses if c.source is not clause.source]
        if clause.predicate is not None:
            self._clauses.append(clause)
        logger.debug("Cross-filter update from %r (%d clauses)", clause.source, len(self._clauses))
        self._notify(self._listeners, clause)

    def activate(self, clause: Clause) -> None:
        """Announce an upcoming clause (e.g. pointer hover) without changing the filter."""
        self._notify(self._activate_listeners, clause)

    def reset(self, sources: Optional[Iterable[Any]] = None) -> None:
        """Drop the clauses of ``sources`` (all sources by default) and reset them."""
        if sources is None:
            targets = [c.source for c in self._clauses]
        else:
            targets = list(sources)
        self._clauses = [c for c in self._clauses if not any(c.source is s for s in targets)]
        self._notify(self._listeners, None)
        for source in targets:
            source.reset()

    def predicate(self, client: Any = None) -> Optional[exp.Expression]:
        """Conjunction of all clauses not produced by ``client``; None when unfiltered."""
        return and_(*[c.predicate for c in self._clauses if client is None or client not in c.clients])

    def to_sql(self) -> str:
        return predicate_to_string(self.predicate())

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, fn: Listener, activate: bool = False) -> Callable[[], None]:
        listeners = self._activate_listeners if activate else self._listeners
        listeners.append(fn)

        def remove() -> None:
            if fn in listeners:
                listeners.remove(fn)

        return remove

    @staticmethod
    def _notify(listeners: List[Listener], clause: Optional[Clause]) -> None:
        for fn in list(listeners):
            fn(clause)
