"""
Chart runtime.

Owns one chart spec at a time. ``set_spec`` collects field statistics,
builds every layer, connects their query clients and keeps the chart's
selections in sync with the shared cross-filter. Outputs are published
through reactive cells:

    runtime.outputs     ChartOutputs (scales, axes, layer tables)
    runtime.selections  SelectionOutputs per named selection
    runtime.state       interaction state (selection values by key)
    runtime.error       last query failure, if any

Each named selection writes through its own ``SelectionSource``, so the
cross-filter holds at most one clause per (chart, selection).
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from core.context import BuildContext, ChartContext
from core.crossfilter import Clause, SelectionSource
from core.errors import SpecValidationError
from core.models import ChartOutputs, ChartSpec, ScaleHints, SelectionOutputs
from core.reactive import Cell, Derived
from core.utils import deep_equals, deep_merge
from skills.field_stats import compute_all_field_stats
from skills.layer_builder import build_layer
from skills.scale_inference import chart_outputs, merge_hints_into
from skills.selection import selection_outputs

logger = logging.getLogger("uvicorn.error")


def parse_spec(spec: Union[ChartSpec, Dict[str, Any]]) -> ChartSpec:
    if isinstance(spec, ChartSpec):
        return spec
    if not isinstance(spec, dict):
        raise SpecValidationError("Chart spec must be a JSON object")
    try:
        return ChartSpec.model_validate(spec)
    except ValidationError as e:
        raise SpecValidationError(f"Invalid chart spec: {e}") from e


class ChartRuntime:
    def __init__(
        self,
        context: ChartContext,
        name: str = "chart",
        on_reset: Optional[Callable[[], None]] = None,
        on_state_change: Optional[Callable[[Optional[Dict[str, Any]]], None]] = None,
        on_spec_change: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.context = context
        self.name = name
        self.spec: Optional[ChartSpec] = None
        self.outputs: Cell[ChartOutputs] = Cell(None)
        self.selections: Cell[List[SelectionOutputs]] = Cell(None)
        self.state: Cell[Dict[str, Any]] = Cell(None)
        self.error: Cell[Exception] = Cell(None)
        self._on_reset = on_reset
        self._on_state_change = on_state_change
        self._on_spec_change = on_spec_change
        self._sources: Dict[str, SelectionSource] = {}
        self._cleanup_fn: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Spec
    # ------------------------------------------------------------------

    async def set_spec(self, spec: Union[ChartSpec, Dict[str, Any]]) -> None:
        """Rebuild the chart for ``spec``; deep-equal specs are a no-op.

        If another ``set_spec`` call starts while statistics are being
        computed, this call returns without applying anything.
        """
        spec = parse_spec(spec)
        if self.spec is not None and deep_equals(spec.to_json(), self.spec.to_json()):
            return

        self._cleanup()
        self.spec = spec
        self.error.set(None)

        ctx = BuildContext(self.context, spec)
        try:
            ctx.stats = await compute_all_field_stats(ctx)
        except asyncio.CancelledError:
            if self.spec is spec:
                self.spec = None
            raise
        except Exception as e:
            if self.spec is not spec:
                return
            logger.exception("Computing field statistics failed for chart %s", self.name)
            self._fail(e)
            raise
        if self.spec is not spec:
            logger.debug("Discarding stale build for chart %s", self.name)
            return

        try:
            self._build(ctx)
        except Exception as e:
            logger.exception("Building chart %s failed", self.name)
            self._fail(e)
            raise

    def _fail(self, error: Exception) -> None:
        self.spec = None
        self.outputs.set(None)
        self.selections.set(None)
        self.error.set(error)

    async def update_spec(self, value: Dict[str, Any], mode: str = "merge") -> None:
        current = self.spec.to_json() if self.spec is not None else {}
        new = deep_merge(current, value) if mode == "merge" else copy.deepcopy(value)
        spec = parse_spec(new)
        if self._on_spec_change is not None:
            self._on_spec_change(spec.to_json())
        await self.set_spec(spec)

    def _build(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        filter = self.context.filter
        coordinator = self.context.coordinator

        hints: Dict[str, ScaleHints] = {}
        builds = [build_layer(ctx, layer, i, on_error=self._on_client_error) for i, layer in enumerate(spec.layers)]
        for build in builds:
            merge_hints_into(hints, build.scale_hints)
        clients = [build.client for build in builds if build.client is not None]

        combined = Derived([build.outputs for build in builds], lambda *values: chart_outputs(spec, hints, values))
        unsubscribe_outputs = combined.subscribe(self.outputs.set)
        self.selections.set(selection_outputs(spec, hints))

        sources = {key: self._source(key) for key in spec.selection}
        synced: Dict[str, Any] = {}

        def sync(pair) -> None:
            selections, state = pair
            for selection in selections or []:
                value = (state or {}).get(selection.key)
                if selection.key in synced and deep_equals(synced[selection.key], value):
                    continue
                synced[selection.key] = copy.deepcopy(value)
                source = sources[selection.key]
                template = selection.clause(value)
                if template is None and not any(c.source is source for c in filter.clauses):
                    continue
                filter.update(
                    Clause(
                        source=source,
                        clients=set(clients),
                        value=template.value if template is not None else None,
                        predicate=template.predicate if template is not None else None,
                    )
                )

        pair = Derived([self.selections, self.state], lambda selections, state: (selections, state))
        unsubscribe_sync = pair.subscribe(sync)

        for client in clients:
            coordinator.connect(client)

        def cleanup() -> None:
            for source in sources.values():
                if not any(c.source is source for c in filter.clauses):
                    continue
                filter.update(Clause(source=source, clients=set(clients), value=None, predicate=None))
            unsubscribe_sync()
            unsubscribe_outputs()
            pair.dispose()
            combined.dispose()
            for client in clients:
                client.destroy()

        self._cleanup_fn = cleanup
        logger.info("Chart %s built with %d layers, %d live queries", self.name, len(builds), len(clients))

    def _cleanup(self) -> None:
        if self._cleanup_fn is not None:
            self._cleanup_fn()
            self._cleanup_fn = None
            self.state.set(None)
        self.spec = None

    def destroy(self) -> None:
        self._cleanup()
        self.outputs.set(None)
        self.state.set(None)
        self.selections.set(None)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def set_state(self, value: Optional[Dict[str, Any]], mode: str = "merge") -> None:
        current = self.state.get() or {}
        if mode == "merge" and value is not None:
            new = deep_merge(current, value)
        else:
            new = copy.deepcopy(value)
        self.state.set(new)
        if self._on_state_change is not None:
            self._on_state_change(new)

    def _source(self, key: str) -> SelectionSource:
        if key not in self._sources:
            self._sources[key] = SelectionSource(f"{self.name}/{key}", on_reset=lambda: self._reset_selection(key))
        return self._sources[key]

    def _reset_selection(self, key: str) -> None:
        state = self.state.get() or {}
        if state.get(key) is not None:
            self.set_state({key: None})
        if self._on_reset is not None:
            self._on_reset()

    def _on_client_error(self, error: Exception) -> None:
        self.error.set(error)
