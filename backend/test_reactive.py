"""
Tests for reactive cells and the shared cross-filter.
"""

import pytest

from core.crossfilter import Clause, CrossFilter, SelectionSource
from core.reactive import Cell, Derived
from core.sql import parse, to_sql


class TestCell:
    def test_subscribe_calls_immediately_and_on_change(self):
        cell = Cell(1)
        seen = []
        unsubscribe = cell.subscribe(seen.append)
        cell.set(2)
        unsubscribe()
        cell.set(3)
        assert seen == [1, 2]

    def test_same_object_does_not_notify(self):
        value = {"a": 1}
        cell = Cell(value)
        seen = []
        cell.subscribe(seen.append)
        cell.set(value)
        assert seen == [value]

    def test_update(self):
        cell = Cell(2)
        cell.update(lambda v: v * 10)
        assert cell.get() == 20


class TestDerived:
    def test_recomputes_from_sources(self):
        a = Cell(1)
        b = Derived([a], lambda x: x * 2)
        a.set(5)
        assert b.get() == 10

    def test_read_only(self):
        with pytest.raises(TypeError):
            Derived([Cell(1)], lambda x: x).set(2)

    def test_glitch_free_diamond(self):
        """A cell depending on a and on b(a) never sees a new a with an old b."""
        a = Cell(1)
        b = Derived([a], lambda x: x * 2)
        c = Derived([a, b], lambda x, y: (x, y))
        seen = []
        c.subscribe(seen.append)
        a.set(2)
        a.set(3)
        assert seen == [(1, 2), (2, 4), (3, 6)]

    def test_each_derived_computed_once_per_change(self):
        calls = []
        a = Cell(1)
        b = Derived([a], lambda x: x + 1)
        c = Derived([a], lambda x: x + 2)

        def combine(x, y, z):
            calls.append((x, y, z))
            return x + y + z

        d = Derived([a, b, c], combine)
        calls.clear()
        a.set(10)
        assert calls == [(10, 11, 12)]
        assert d.get() == 33

    def test_subscribers_see_consistent_graph(self):
        a = Cell(1)
        b = Derived([a], lambda x: x * 2)
        observed = []
        a.subscribe(lambda _: observed.append((a.get(), b.get())))
        a.set(4)
        assert observed[-1] == (4, 8)

    def test_unchanged_result_stops_propagation(self):
        a = Cell(1)
        const = object()
        b = Derived([a], lambda x: const)
        seen = []
        c = Derived([b], lambda v: seen.append(v) or v)
        seen.clear()
        a.set(2)
        assert seen == []
        assert c.get() is const

    def test_dispose_detaches(self):
        a = Cell(1)
        b = Derived([a], lambda x: x * 2)
        seen = []
        b.subscribe(seen.append)
        b.dispose()
        a.set(7)
        assert b.get() == 2
        assert seen == [2]


class TestCrossFilter:
    def setup_method(self):
        self.filter = CrossFilter()
        self.reset_calls = []
        self.s1 = SelectionSource("chart/brush", on_reset=lambda: self.reset_calls.append("s1"))
        self.s2 = SelectionSource("other/select", on_reset=lambda: self.reset_calls.append("s2"))
        self.c1, self.c2, self.c3 = object(), object(), object()

    def _clause(self, source, clients, sql):
        return Clause(source=source, clients=set(clients), value=sql, predicate=parse(sql) if sql else None)

    def test_unfiltered(self):
        assert self.filter.predicate() is None
        assert self.filter.to_sql() == "(true)"

    def test_update_replaces_clause_of_same_source(self):
        self.filter.update(self._clause(self.s1, [self.c1], "a > 1"))
        self.filter.update(self._clause(self.s1, [self.c1], "a > 2"))
        assert len(self.filter.clauses) == 1
        assert self.filter.to_sql() == "(a > 2)"

    def test_none_predicate_removes(self):
        self.filter.update(self._clause(self.s1, [self.c1], "a > 1"))
        self.filter.update(self._clause(self.s1, [self.c1], None))
        assert self.filter.clauses == []

    def test_client_excludes_own_clauses(self):
        self.filter.update(self._clause(self.s1, [self.c1], "a > 1"))
        self.filter.update(self._clause(self.s2, [self.c2, self.c3], "b = 'x'"))
        assert to_sql(self.filter.predicate(self.c1)) == "b = 'x'"
        assert to_sql(self.filter.predicate(self.c2)) == "a > 1"
        assert to_sql(self.filter.predicate()) == "a > 1 AND b = 'x'"

    def test_reset_all(self):
        seen = []
        self.filter.add_listener(seen.append)
        self.filter.update(self._clause(self.s1, [self.c1], "a > 1"))
        self.filter.update(self._clause(self.s2, [self.c2], "b > 1"))
        self.filter.reset()
        assert self.filter.clauses == []
        assert seen[-1] is None
        assert sorted(self.reset_calls) == ["s1", "s2"]

    def test_reset_selected_sources(self):
        self.filter.update(self._clause(self.s1, [self.c1], "a > 1"))
        self.filter.update(self._clause(self.s2, [self.c2], "b > 1"))
        self.filter.reset([self.s2])
        assert [c.source for c in self.filter.clauses] == [self.s1]
        assert self.reset_calls == ["s2"]

    def test_listener_removal(self):
        seen = []
        remove = self.filter.add_listener(seen.append)
        clause = self._clause(self.s1, [self.c1], "a > 1")
        self.filter.update(clause)
        remove()
        self.filter.update(self._clause(self.s1, [self.c1], None))
        assert seen == [clause]

    def test_activate_leaves_filter_unchanged(self):
        seen = []
        self.filter.add_listener(seen.append, activate=True)
        clause = self._clause(self.s1, [self.c1], "a > 1")
        self.filter.activate(clause)
        assert seen == [clause]
        assert self.filter.clauses == []
