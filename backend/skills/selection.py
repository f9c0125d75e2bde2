"""
Selections.

A chart's named selections turn interaction state into cross-filter
clauses. A selection value is a dict with optional ``x`` / ``y`` entries
(an interval ``[lo, hi]``, a bucket label, or a list of them); the
channel's scale-hint predicate builder translates each entry to SQL.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from core.models import ChartSpec, ClauseTemplate, ScaleHints, SelectionOutputs
from core.sql import and_
from core.utils import structural_key


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict)) and len(value) == 0:
        return True
    if isinstance(value, dict):
        return all(_is_empty(v) for v in value.values())
    return False


def _make_clause(key: str, encoding: str, hints: Dict[str, ScaleHints]):
    x_predicate = hints["x"].predicate if encoding in ("x", "xy") and "x" in hints else None
    y_predicate = hints["y"].predicate if encoding in ("y", "xy") and "y" in hints else None

    def clause(value: Any) -> Optional[ClauseTemplate]:
        if _is_empty(value) or not isinstance(value, dict):
            return None
        predicate = and_(
            x_predicate(value.get("x")) if x_predicate is not None else None,
            y_predicate(value.get("y")) if y_predicate is not None else None,
        )
        if predicate is None:
            return None
        return ClauseTemplate(value=value, predicate=predicate)

    return clause


def selection_outputs(spec: ChartSpec, hints: Dict[str, ScaleHints]) -> List[SelectionOutputs]:
    return [
        SelectionOutputs(key=key, type=selection.encoding, clause=_make_clause(key, selection.encoding, hints))
        for key, selection in spec.selection.items()
    ]


# ---------------------------------------------------------------------------
# Click selection
# ---------------------------------------------------------------------------

def toggle_value(current: Optional[List[Any]], value: Any, additive: bool = False) -> List[Any]:
    """Next list of selected values after clicking ``value``.

    A plain click selects only ``value`` (or clears the selection when it was
    the only selected value); an additive (shift) click toggles ``value``.
    """
    items = list(current or [])
    key = structural_key(value)
    selected = any(structural_key(v) == key for v in items)
    if additive:
        if selected:
            return [v for v in items if structural_key(v) != key]
        return items + [value]
    if selected and len(items) == 1:
        return []
    return [value]


def click_state(
    state: Optional[Dict[str, Any]],
    key: str,
    axis: str,
    value: Any,
    additive: bool = False,
) -> Dict[str, Any]:
    """State update for a click on ``value`` along ``axis`` of selection ``key``."""
    current = copy.deepcopy((state or {}).get(key)) or {}
    items = toggle_value(current.get(axis), value, additive)
    if items:
        current[axis] = items
    else:
        current.pop(axis, None)
    return {key: current or None}
