"""
Chart widgets.

Widgets are small controls declared in a chart spec that edit one setting
of the spec itself: the scale type of a channel, or the normalization of an
aggregate encoding across one or more layers. Both helpers work on the JSON
form of the spec and never mutate their input.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from core.models import ChartSpec, NormalizeWidget, ScaleTypeWidget, Widget

logger = logging.getLogger("uvicorn.error")

SCALE_TYPES = ("linear", "log", "symlog", "band")


def _layers(widget: NormalizeWidget) -> List[int]:
    return widget.layer if isinstance(widget.layer, list) else [widget.layer]


def widget_value(spec: ChartSpec, widget: Widget) -> Any:
    """Current value of ``widget`` in ``spec`` (None when unset)."""
    if isinstance(widget, ScaleTypeWidget):
        scale = spec.scale.get(widget.channel)
        return scale.type if scale is not None else None

    for index in _layers(widget):
        if index >= len(spec.layers):
            continue
        encoding = spec.layers[index].encoding.get(widget.attribute)
        normalize = getattr(encoding, "normalize", None)
        if normalize is not None:
            return normalize
    return None


def apply_widget(spec: ChartSpec, widget: Widget, value: Any) -> Dict[str, Any]:
    """Return the JSON spec with ``widget`` set to ``value``.

    Invalid values are logged and leave the spec unchanged.
    """
    data = copy.deepcopy(spec.to_json())

    if isinstance(widget, ScaleTypeWidget):
        if value is not None and value not in SCALE_TYPES:
            logger.warning("Invalid widget value: unknown scale type '%s'", value)
            return data
        scales = data.setdefault("scale", {})
        scale = scales.setdefault(widget.channel, {})
        if value is None:
            scale.pop("type", None)
            if not scale:
                del scales[widget.channel]
        else:
            scale["type"] = value
        return data

    if value is not None and value not in widget.options:
        logger.warning("Invalid widget value: normalize '%s' is not one of %s", value, widget.options)
        return data
    layers = data.get("layers", [])
    for index in _layers(widget):
        if index >= len(layers):
            logger.warning("Invalid widget: layer %d does not exist", index)
            continue
        encoding: Optional[Dict[str, Any]] = layers[index].get("encoding", {}).get(widget.attribute)
        if encoding is None or "aggregate" not in encoding:
            continue
        if value is None:
            encoding.pop("normalize", None)
        else:
            encoding["normalize"] = value
    return data
