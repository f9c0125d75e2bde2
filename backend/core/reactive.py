"""
Reactive cells.

A small single-threaded signal graph: writable ``Cell``s and ``Derived``
cells computed from them. Propagation is glitch-free: when a cell changes,
every affected derived cell is recomputed in rank order (a derived cell's
rank is one more than its highest source) before any subscriber runs, so no
subscriber observes a half-updated graph.

Usage:
    a = Cell(1)
    b = Derived([a], lambda x: x * 2)
    unsubscribe = b.subscribe(print)   # prints 2
    a.set(3)                           # prints 6
"""

from __future__ import annotations

import heapq
import itertools
import logging
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

Subscriber = Callable[[Any], None]


class _Scheduler:
    def __init__(self) -> None:
        self._queue: List[tuple] = []
        self._queued: set = set()
        self._notify: Dict[int, "Cell"] = {}
        self._seq = itertools.count()
        self._flushing = False

    def changed(self, cell: "Cell") -> None:
        for dep in cell._dependents:
            if id(dep) not in self._queued:
                self._queued.add(id(dep))
                heapq.heappush(self._queue, (dep.rank, next(self._seq), dep))
        self._notify.setdefault(id(cell), cell)
        self.flush()

    def flush(self) -> None:
        if self._flushing:
            return
        self._flushing = True
        try:
            while self._queue or self._notify:
                while self._queue:
                    _, _, dep = heapq.heappop(self._queue)
                    self._queued.discard(id(dep))
                    if dep._recompute():
                        for d in dep._dependents:
                            if id(d) not in self._queued:
                                self._queued.add(id(d))
                                heapq.heappush(self._queue, (d.rank, next(self._seq), d))
                        self._notify.setdefault(id(dep), dep)
                pending = list(self._notify.values())
                self._notify.clear()
                for cell in pending:
                    cell._emit()
        finally:
            self._flushing = False


_scheduler = _Scheduler()


class Cell(Generic[T]):
    """A writable value with subscribers."""

    rank = 0

    def __init__(self, value: Optional[T] = None) -> None:
        self._value = value
        self._subscribers: List[Subscriber] = []
        self._dependents: List["Derived"] = []

    def get(self) -> Optional[T]:
        return self._value

    def set(self, value: Optional[T]) -> None:
        if value is self._value:
            return
        self._value = value
        _scheduler.changed(self)

    def update(self, fn: Callable[[Optional[T]], Optional[T]]) -> None:
        self.set(fn(self._value))

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Call ``fn`` now and on every change; returns an unsubscribe callable."""
        self._subscribers.append(fn)
        fn(self._value)

        def unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return unsubscribe

    def _emit(self) -> None:
        for fn in list(self._subscribers):
            fn(self._value)


class Derived(Cell[T]):
    """A read-only cell computed from other cells."""

    def __init__(self, sources: Sequence[Cell], compute: Callable[..., T]) -> None:
        self._sources = list(sources)
        self._compute = compute
        self.rank = max((s.rank for s in self._sources), default=0) + 1
        super().__init__(compute(*[s.get() for s in self._sources]))
        for s in self._sources:
            s._dependents.append(self)

    def set(self, value: Optional[T]) -> None:
        raise TypeError("Derived cells are read-only")

    def _recompute(self) -> bool:
        value = self._compute(*[s.get() for s in self._sources])
        if value is self._value:
            return False
        self._value = value
        return True

    def dispose(self) -> None:
        """Detach from sources; the cell keeps its last value."""
        for s in self._sources:
            if self in s._dependents:
                s._dependents.remove(self)
        self._subscribers.clear()
