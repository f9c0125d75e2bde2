"""
Scale inference.

Per-channel scale hints from every layer are merged into one description,
then combined with the data each layer returned to produce the chart's
concrete ``ScaleConfig``s. An explicit domain in the chart spec always wins.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from core.config import NO_DATA_DOMAIN, SINGLE_POINT_ZERO_DOMAIN
from core.models import Axis, ChartOutputs, ChartSpec, LayerOutputs, Scale, ScaleConfig, ScaleHints
from core.utils import finite_extent, flatten_values, structural_key
from skills.encoding import channel_for_attribute

logger = logging.getLogger("uvicorn.error")


def _union(a: Sequence[Any], b: Sequence[Any]) -> List[Any]:
    seen = set()
    out: List[Any] = []
    for v in list(a) + list(b):
        key = structural_key(v)
        if key in seen:
            continue
        seen.add(key)
        out.append(v)
    return out


def merge_scale_hints(current: ScaleHints, value: ScaleHints) -> ScaleHints:
    """Combine two hints for the same channel.

    Domain and special values are unioned, ``include_zero`` is OR-ed and a
    nominal hint makes the result nominal, so those parts do not depend on
    merge order. Scalar settings keep the first one present.
    """
    titles: List[str] = []
    for title in (current.title, value.title):
        if title is not None and title.strip() and title not in titles:
            titles.append(title)
    return ScaleHints(
        kind="nominal" if "nominal" in (current.kind, value.kind) else "quantitative",
        type=current.type if current.type is not None else value.type,
        domain=_union(current.domain, value.domain),
        special_values=_union(current.special_values, value.special_values),
        include_zero=current.include_zero or value.include_zero,
        constant=current.constant if current.constant is not None else value.constant,
        title=", ".join(titles) if titles else None,
        predicate=current.predicate if current.predicate is not None else value.predicate,
    )


def merge_hints_into(target: Dict[str, ScaleHints], hints: Dict[str, ScaleHints]) -> None:
    for channel, hint in hints.items():
        if channel in target:
            target[channel] = merge_scale_hints(target[channel], hint)
        else:
            target[channel] = hint


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------

def _quantitative_domain(hints: ScaleHints, data: Sequence[Sequence[Any]], channel: str) -> List[float]:
    values = flatten_values(list(hints.domain))
    for column in data:
        values.extend(flatten_values(list(column)))
    lo, hi = finite_extent(values)
    if lo is None or hi is None:
        lo, hi = NO_DATA_DOMAIN

    # A single point is extended to zero.
    if lo == hi:
        if lo > 0:
            lo = 0.0
        elif lo < 0:
            hi = 0.0
        else:
            lo, hi = SINGLE_POINT_ZERO_DOMAIN

    if channel == "size" or hints.include_zero:
        if lo > 0:
            lo = 0.0
        elif hi < 0:
            hi = 0.0
    return [lo, hi]


def _nominal_domain(hints: ScaleHints, data: Sequence[Sequence[Any]]) -> List[str]:
    special = set(hints.special_values)
    out: List[str] = []
    seen = set()
    values = list(hints.domain)
    for column in data:
        values.extend(flatten_values(list(column)))
    for v in values:
        if not isinstance(v, str) or v in special or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def infer_scale(
    spec: Optional[Scale],
    hints: ScaleHints,
    data: Sequence[Sequence[Any]],
    channel: str,
) -> ScaleConfig:
    spec = spec or Scale()
    special_values = spec.special_values if spec.special_values is not None else list(hints.special_values)
    if hints.kind == "quantitative":
        domain = spec.domain if spec.domain is not None else _quantitative_domain(hints, data, channel)
        default_type = "linear"
    else:
        domain = spec.domain if spec.domain is not None else _nominal_domain(hints, data)
        default_type = "band"
    return ScaleConfig(
        type=spec.type or hints.type or default_type,
        domain=list(domain),
        special_values=special_values,
        constant=spec.constant if spec.constant is not None else hints.constant,
        range=spec.range,
    )


def chart_outputs(
    spec: ChartSpec,
    hints: Dict[str, ScaleHints],
    layers: Sequence[Optional[LayerOutputs]],
) -> ChartOutputs:
    """Assemble the chart outputs from the current layer outputs."""
    scale_data: Dict[str, List[List[Any]]] = {}
    for index, layer in enumerate(spec.layers):
        outputs = layers[index] if index < len(layers) else None
        if outputs is None:
            continue
        for attribute in layer.encoding:
            channel = channel_for_attribute(attribute)
            column = outputs.data.columns.get(attribute)
            if channel is not None and column is not None:
                scale_data.setdefault(channel, []).append(column)

    scale = {
        channel: infer_scale(spec.scale.get(channel), hint, scale_data.get(channel, []), channel)
        for channel, hint in hints.items()
    }

    axis: Dict[str, Axis] = {}
    for name in ("x", "y"):
        fields: Dict[str, Any] = {}
        if name in hints and hints[name].title is not None:
            fields["title"] = hints[name].title
        if name in spec.axis:
            fields.update(spec.axis[name].model_dump(exclude_unset=True))
        axis[name] = Axis(**fields)

    return ChartOutputs(scale=scale, axis=axis, layers=[layer for layer in layers if layer is not None])
