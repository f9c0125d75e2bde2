"""
Tests for selections: click toggling and clause construction.
"""

import asyncio

import pandas as pd
import pytest

from core.coordinator import Coordinator, DuckDBConnector
from core.models import ChartSpec, FieldStats, Level, NominalStats, QuantitativeStats, ScaleHints
from core.sql import column, count, select, table
from skills.binning import infer_aggregate
from skills.selection import click_state, selection_outputs, toggle_value


@pytest.fixture
def coordinator():
    connector = DuckDBConnector(":memory:")
    connector.load_dataframe(
        "t",
        pd.DataFrame({"cat": ["x", "x", "y", "z", None], "num": [1.0, 5.0, 12.0, 30.0, 55.0]}),
    )
    yield Coordinator(connector)
    connector.close()


def _rows(coordinator, predicate):
    query = select({"n": count()}, table("t"), where=predicate)
    return int(asyncio.run(coordinator.query(query))["n"].iloc[0])


def _nominal_hints():
    stats = FieldStats(
        field=column("cat"),
        nominal=NominalStats(levels=[Level(value="x", count=2), Level(value="y", count=1), Level(value="z", count=1)], null_count=1),
    )
    info = infer_aggregate(stats)
    return ScaleHints(kind="nominal", domain=info.scale.domain, predicate=info.predicate)


def _quantitative_hints():
    stats = FieldStats(field=column("num"), quantitative=QuantitativeStats(count=5, min=1.0, max=55.0, min_positive=1.0))
    info = infer_aggregate(stats, bin_count=5)
    return ScaleHints(kind="quantitative", domain=info.scale.domain, predicate=info.predicate)


def _clause_fn(encoding, hints):
    spec = ChartSpec.model_validate({"selection": {"sel": {"encoding": encoding}}})
    (outputs,) = selection_outputs(spec, hints)
    assert outputs.key == "sel"
    assert outputs.type == encoding
    return outputs.clause


class TestToggleValue:
    def test_plain_click_selects_only_value(self):
        assert toggle_value(["a", "b"], "c") == ["c"]

    def test_plain_click_on_sole_value_clears(self):
        assert toggle_value(["a"], "a") == []

    def test_plain_click_on_one_of_many_selects_it(self):
        assert toggle_value(["a", "b"], "a") == ["a"]

    def test_additive_adds_and_removes(self):
        assert toggle_value(["a"], "b", additive=True) == ["a", "b"]
        assert toggle_value(["a", "b"], "a", additive=True) == ["b"]

    def test_interval_values_compared_structurally(self):
        assert toggle_value([[0, 10]], (0, 10), additive=True) == []


class TestClickSelection:
    def test_toggle_to_empty_has_no_predicate(self, coordinator):
        """Select "x", then shift-click it off: the clause disappears instead of matching nothing."""
        clause = _clause_fn("x", {"x": _nominal_hints()})

        state = click_state(None, "sel", "x", "x")
        assert state == {"sel": {"x": ["x"]}}
        template = clause(state["sel"])
        assert template.value == {"x": ["x"]}
        assert _rows(coordinator, template.predicate) == 2

        state = click_state(state, "sel", "x", "x", additive=True)
        assert state == {"sel": None}
        assert clause(state["sel"]) is None
        assert clause({"x": []}) is None

    def test_click_state_keeps_other_axis(self):
        state = click_state({"sel": {"y": ["b"]}}, "sel", "x", "a")
        assert state == {"sel": {"y": ["b"], "x": ["a"]}}

    def test_click_state_does_not_mutate_input(self):
        current = {"sel": {"x": ["a"]}}
        click_state(current, "sel", "x", "b", additive=True)
        assert current == {"sel": {"x": ["a"]}}


class TestSelectionClauses:
    def test_nominal_values_and_null(self, coordinator):
        clause = _clause_fn("x", {"x": _nominal_hints()})
        assert _rows(coordinator, clause({"x": ["x", "z"]}).predicate) == 3
        assert _rows(coordinator, clause({"x": ["(null)"]}).predicate) == 1

    def test_interval(self, coordinator):
        clause = _clause_fn("x", {"x": _quantitative_hints()})
        assert _rows(coordinator, clause({"x": [0, 20]}).predicate) == 3

    def test_xy_combines_both_axes(self, coordinator):
        clause = _clause_fn("xy", {"x": _quantitative_hints(), "y": _nominal_hints()})
        template = clause({"x": [0, 20], "y": ["x"]})
        assert _rows(coordinator, template.predicate) == 2

    def test_xy_with_one_axis_set(self, coordinator):
        clause = _clause_fn("xy", {"x": _quantitative_hints(), "y": _nominal_hints()})
        assert _rows(coordinator, clause({"y": ["y"]}).predicate) == 1

    def test_axis_outside_selection_encoding_ignored(self, coordinator):
        clause = _clause_fn("y", {"x": _quantitative_hints(), "y": _nominal_hints()})
        assert clause({"x": [0, 20]}) is None

    @pytest.mark.parametrize("value", [None, {}, {"x": None}, "x", [1, 2]])
    def test_empty_or_malformed_values(self, value):
        clause = _clause_fn("x", {"x": _nominal_hints()})
        assert clause(value) is None

    def test_missing_channel_hints(self):
        clause = _clause_fn("x", {})
        assert clause({"x": ["a"]}) is None
