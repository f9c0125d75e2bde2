"""
Tests for the chart runtime: building, selection sync, teardown and
stale-build cancellation.
"""

import asyncio
import copy

import pandas as pd
import pytest
from sqlglot.errors import ParseError

from core.context import ChartContext
from core.coordinator import Coordinator, DuckDBConnector
from core.errors import QueryExecutionError, SpecValidationError
from server.chart_runtime import ChartRuntime, parse_spec


def _count_layers(field, attribute="x"):
    value = "y" if attribute == "x" else "x"
    encoding = {attribute: {"field": field}, value: {"aggregate": "count"}}
    return [
        {"mark": "bar", "encoding": copy.deepcopy(encoding)},
        {"mark": "bar", "filter": "$filter", "encoding": copy.deepcopy(encoding)},
    ]


CAT_SPEC = {"layers": _count_layers("cat"), "selection": {"sel": {"encoding": "x"}}}
GRP_SPEC = {"layers": _count_layers("grp"), "selection": {"sel": {"encoding": "x"}}}
NUM_SPEC = {"layers": [{"mark": "bar", "encoding": {"x": {"field": "num"}, "y": {"aggregate": "count"}}}]}


@pytest.fixture
def coordinator():
    connector = DuckDBConnector(":memory:")
    connector.load_dataframe(
        "t",
        pd.DataFrame({
            "cat": ["a", "a", "a", "b", "b", "c"],
            "grp": ["u", "v", "u", "u", "v", "v"],
            "num": [1, 2, 3, 4, 5, 100],
        }),
    )
    yield Coordinator(connector)
    connector.close()


def _counts(runtime, layer):
    data = runtime.outputs.get().layers[layer].data
    return {x: y[1] - y[0] for x, y in zip(data.columns["x"], data.columns["y"])}


class TestParseSpec:
    def test_rejects_non_objects(self):
        with pytest.raises(SpecValidationError):
            parse_spec(["not", "a", "spec"])

    def test_rejects_invalid_fields(self):
        with pytest.raises(SpecValidationError):
            parse_spec({"layers": "bar"})


class TestBuild:
    def test_outputs_published(self, coordinator):
        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"), name="c1")
            await runtime.set_spec(CAT_SPEC)
            await coordinator.settle()
            return runtime

        runtime = asyncio.run(scenario())
        outputs = runtime.outputs.get()
        assert len(outputs.layers) == 2
        assert _counts(runtime, 0) == {"a": 3, "b": 2, "c": 1}
        assert outputs.scale["x"].type == "band"
        assert outputs.scale["x"].domain == ["a", "b", "c"]
        assert outputs.scale["y"].domain[0] == 0
        assert [s.key for s in runtime.selections.get()] == ["sel"]
        assert runtime.error.get() is None

    def test_identical_spec_is_noop(self, coordinator):
        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"))
            await runtime.set_spec(CAT_SPEC)
            await coordinator.settle()
            before = (coordinator.query_count, list(coordinator.clients))
            await runtime.set_spec(copy.deepcopy(CAT_SPEC))
            await coordinator.settle()
            return before, (coordinator.query_count, list(coordinator.clients))

        before, after = asyncio.run(scenario())
        assert after == before

    def test_stale_build_discarded(self, coordinator):
        """Two overlapping set_spec calls: only the later spec is built."""
        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"))
            await asyncio.gather(runtime.set_spec(CAT_SPEC), runtime.set_spec(NUM_SPEC))
            await coordinator.settle()
            return runtime

        runtime = asyncio.run(scenario())
        assert runtime.spec.to_json() == parse_spec(NUM_SPEC).to_json()
        assert len(coordinator.clients) == 1
        assert len(runtime.outputs.get().layers) == 1

    def test_stats_failure_sets_error(self, coordinator):
        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"))
            with pytest.raises(QueryExecutionError):
                await runtime.set_spec({"layers": _count_layers("nope")})
            return runtime

        runtime = asyncio.run(scenario())
        assert isinstance(runtime.error.get(), QueryExecutionError)
        assert runtime.spec is None
        assert coordinator.clients == []

    def test_build_failure_sets_error_and_retries(self, coordinator):
        """A layer whose SQL cannot be parsed fails every attempt, then a valid spec recovers."""
        bad = {"layers": [{"mark": "bar", "encoding": {"x": {"aggregate": {"sql": "SUM((("}}}}]}

        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"))
            failures = []
            for _ in range(2):
                with pytest.raises(ParseError) as info:
                    await runtime.set_spec(bad)
                failures.append((runtime.spec, runtime.error.get() is info.value, runtime.outputs.get()))
            await runtime.set_spec(CAT_SPEC)
            await coordinator.settle()
            return runtime, failures

        runtime, failures = asyncio.run(scenario())
        assert failures == [(None, True, None), (None, True, None)]
        assert runtime.error.get() is None
        assert _counts(runtime, 0) == {"a": 3, "b": 2, "c": 1}
        assert len(coordinator.clients) == 2

    def test_cancelled_build_does_not_break_sibling(self, coordinator):
        """Two charts share a field's stats; cancelling one leaves the other built."""
        async def scenario():
            context = ChartContext(coordinator, "t")
            first = ChartRuntime(context, name="first")
            second = ChartRuntime(context, name="second")
            a = asyncio.ensure_future(first.set_spec(CAT_SPEC))
            b = asyncio.ensure_future(second.set_spec(CAT_SPEC))
            await asyncio.sleep(0)
            a.cancel()
            results = await asyncio.gather(a, b, return_exceptions=True)
            await coordinator.settle()
            cancelled_spec = first.spec
            await first.set_spec(CAT_SPEC)
            await coordinator.settle()
            return first, second, results, cancelled_spec

        first, second, results, cancelled_spec = asyncio.run(scenario())
        assert isinstance(results[0], asyncio.CancelledError)
        assert results[1] is None
        assert cancelled_spec is None
        assert _counts(second, 0) == {"a": 3, "b": 2, "c": 1}
        assert _counts(first, 0) == {"a": 3, "b": 2, "c": 1}
        assert len(coordinator.clients) == 4

    def test_update_spec_merges_and_reports(self, coordinator):
        changes = []

        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"), on_spec_change=changes.append)
            await runtime.set_spec(CAT_SPEC)
            runtime.set_state({"sel": {"x": ["a"]}})
            await runtime.update_spec({"title": "Categories"})
            await coordinator.settle()
            return runtime

        runtime = asyncio.run(scenario())
        assert runtime.spec.title == "Categories"
        assert len(runtime.spec.layers) == 2
        assert changes[-1]["title"] == "Categories"
        assert runtime.state.get() is None
        assert runtime.context.filter.clauses == []

    def test_update_spec_replace(self, coordinator):
        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"))
            await runtime.set_spec(CAT_SPEC)
            await runtime.update_spec(NUM_SPEC, mode="replace")
            await coordinator.settle()
            return runtime

        runtime = asyncio.run(scenario())
        assert runtime.spec.selection == {}
        assert len(coordinator.clients) == 1


class TestSelectionSync:
    def test_destroy_removes_all_clauses(self, coordinator):
        """Two count layers over one field, one filtered: destroy leaves no clauses behind."""
        async def scenario():
            context = ChartContext(coordinator, "t")
            runtime = ChartRuntime(context, name="c1")
            await runtime.set_spec(CAT_SPEC)
            await coordinator.settle()
            clients = list(coordinator.clients)

            runtime.set_state({"sel": {"x": ["a"]}})
            await coordinator.settle()
            during = context.filter.clauses

            runtime.destroy()
            await coordinator.settle()
            return context, clients, during

        context, clients, during = asyncio.run(scenario())
        assert len(clients) == 2
        assert len(during) == 1
        assert during[0].clients == set(clients)
        assert during[0].source.name == "c1/sel"
        assert context.filter.clauses == []
        assert not any(client in c.clients for c in context.filter.clauses for client in clients)
        assert coordinator.clients == []
        assert all(client.destroyed for client in clients)

    def test_own_selection_does_not_filter_own_layers(self, coordinator):
        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"))
            await runtime.set_spec(CAT_SPEC)
            runtime.set_state({"sel": {"x": ["a"]}})
            await coordinator.settle()
            return runtime

        runtime = asyncio.run(scenario())
        assert _counts(runtime, 1) == {"a": 3, "b": 2, "c": 1}

    def test_cross_filter_between_charts(self, coordinator):
        async def scenario():
            context = ChartContext(coordinator, "t")
            cats = ChartRuntime(context, name="cats")
            groups = ChartRuntime(context, name="groups")
            await cats.set_spec(CAT_SPEC)
            await groups.set_spec(GRP_SPEC)
            await coordinator.settle()

            cats.set_state({"sel": {"x": ["a"]}})
            await coordinator.settle()
            filtered = (_counts(groups, 0), _counts(groups, 1), context.filter.to_sql())

            cats.set_state({"sel": None})
            await coordinator.settle()
            return filtered, _counts(groups, 1), context.filter.to_sql()

        (background, foreground, sql), restored, cleared = asyncio.run(scenario())
        assert background == {"u": 3, "v": 3}
        assert foreground == {"u": 2, "v": 1}
        assert "'a'" in sql
        assert restored == {"u": 3, "v": 3}
        assert cleared == "(true)"

    def test_filter_reset_clears_state(self, coordinator):
        resets = []

        async def scenario():
            context = ChartContext(coordinator, "t")
            runtime = ChartRuntime(context, on_reset=lambda: resets.append(True))
            await runtime.set_spec(CAT_SPEC)
            runtime.set_state({"sel": {"x": ["b"]}})
            context.filter.reset()
            await coordinator.settle()
            return context, runtime

        context, runtime = asyncio.run(scenario())
        assert context.filter.clauses == []
        assert runtime.state.get() == {"sel": None}
        assert resets == [True]

    def test_empty_selection_writes_no_clause(self, coordinator):
        async def scenario():
            context = ChartContext(coordinator, "t")
            runtime = ChartRuntime(context)
            await runtime.set_spec(CAT_SPEC)
            runtime.set_state({"sel": {"x": []}})
            await coordinator.settle()
            return context

        assert asyncio.run(scenario()).filter.clauses == []

    def test_state_change_callback(self, coordinator):
        states = []

        async def scenario():
            runtime = ChartRuntime(ChartContext(coordinator, "t"), on_state_change=states.append)
            await runtime.set_spec(CAT_SPEC)
            runtime.set_state({"sel": {"x": ["a"]}})
            runtime.set_state({"other": 1})
            runtime.set_state({"sel": {"x": ["c"]}}, mode="replace")
            await coordinator.settle()

        asyncio.run(scenario())
        assert states == [
            {"sel": {"x": ["a"]}},
            {"sel": {"x": ["a"]}, "other": 1},
            {"sel": {"x": ["c"]}},
        ]
