"""
Core Pydantic models for the chart engine.

All domain types live here so every module shares the same vocabulary.
Spec-facing models serialize with camelCase keys (``zIndex``,
``desiredCount``) and accept either spelling on input.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel
from sqlglot import exp

logger = logging.getLogger("uvicorn.error")


class _SpecModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Chart specs
# ---------------------------------------------------------------------------

MarkType = Literal["bar", "rect", "line", "area", "point", "rule"]
Channel = Literal["x", "y", "color", "size"]
ScaleType = Literal["linear", "log", "symlog", "band"]

ATTRIBUTES = ("x", "y", "x1", "x2", "y1", "y2", "color", "size", "group")

AGGREGATE_FUNCTIONS = (
    "count",
    "distinct",
    "min",
    "max",
    "mean",
    "average",
    "median",
    "stdev",
    "stdevp",
    "variance",
    "variancep",
    "sum",
    "product",
    "quantile",
    "ecdf-value",
    "ecdf-rank",
)

DataValue = Union[int, float, str, List[float]]


class SqlExpr(_SpecModel):
    """Raw SQL fragment; may reference ``$table`` and ``$filter``."""
    model_config = ConfigDict(extra="forbid")

    sql: str


SQLField = Union[str, SqlExpr]
SQLTable = Union[str, SqlExpr]


class BinOptions(_SpecModel):
    model_config = ConfigDict(extra="forbid")

    desired_count: Optional[int] = None


class FieldEncoding(_SpecModel):
    model_config = ConfigDict(extra="forbid")

    field: SQLField
    bin: Optional[BinOptions] = None


class AggregateEncoding(_SpecModel):
    model_config = ConfigDict(extra="forbid")

    aggregate: Union[str, SqlExpr]
    field: Optional[SQLField] = None
    quantile: Optional[float] = None
    normalize: Optional[Literal["x", "y"]] = None


class ValueEncoding(_SpecModel):
    model_config = ConfigDict(extra="forbid")

    value: DataValue


Encoding = Union[FieldEncoding, AggregateEncoding, ValueEncoding]

_encoding_adapter: TypeAdapter = TypeAdapter(Encoding)


class GapDimension(_SpecModel):
    model_config = ConfigDict(extra="forbid")

    gap: float
    clamp_to_ratio: Optional[float] = None


class RatioDimension(_SpecModel):
    model_config = ConfigDict(extra="forbid")

    ratio: float


Dimension = Union[float, GapDimension, RatioDimension]


class MarkStyle(_SpecModel):
    fill_color: Optional[str] = None
    fill_opacity: Optional[float] = None
    stroke_color: Optional[str] = None
    stroke_width: Optional[float] = None
    stroke_opacity: Optional[float] = None
    stroke_cap: Optional[str] = None
    stroke_join: Optional[str] = None
    paint_order: Optional[str] = None
    opacity: Optional[float] = None


class Layer(_SpecModel):
    from_: Optional[SQLTable] = Field(default=None, alias="from")
    filter: Optional[str] = None          # "$filter" opts into the shared filter
    mark: str
    style: Optional[MarkStyle] = None
    z_index: Optional[float] = None
    orientation: Optional[str] = None     # vertical / horizontal
    interpolate: Optional[str] = None
    width: Optional[Dimension] = None
    height: Optional[Dimension] = None
    encoding: Dict[str, Encoding] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _drop_invalid_encodings(cls, data: Any) -> Any:
        """Validate encodings one by one; log and drop the ones that fail."""
        if not isinstance(data, dict) or not isinstance(data.get("encoding"), dict):
            return data
        kept: Dict[str, Any] = {}
        for attribute, raw in data["encoding"].items():
            if attribute not in ATTRIBUTES:
                logger.warning("Invalid spec: unknown attribute '%s', encoding dropped", attribute)
                continue
            if isinstance(raw, dict) and "bin" in raw and "normalize" in raw:
                logger.warning(
                    "Invalid spec: encoding '%s' sets both bin and normalize, encoding dropped",
                    attribute,
                )
                continue
            try:
                kept[attribute] = _encoding_adapter.validate_python(raw)
            except ValidationError as e:
                logger.warning("Invalid spec: encoding '%s' dropped (%s)", attribute, e.error_count())
                continue
        return {**data, "encoding": kept}


class Scale(_SpecModel):
    type: Optional[ScaleType] = None
    domain: Optional[List[DataValue]] = None
    special_values: Optional[List[str]] = None
    constant: Optional[float] = None
    range: Optional[Union[str, List[Union[float, str]]]] = None


class Axis(_SpecModel):
    title: Optional[str] = None
    values: Optional[List[Any]] = None
    desired_tick_count: Optional[int] = None
    extend_scale_to_ticks: Optional[bool] = None
    label_padding: Optional[float] = None
    label_font_family: Optional[str] = None
    label_font_size: Optional[float] = None
    label_max_width: Optional[float] = None


class Selection(_SpecModel):
    encoding: Literal["x", "y", "xy"]


class ScaleTypeWidget(_SpecModel):
    type: Literal["scale.type"]
    channel: Channel


class NormalizeWidget(_SpecModel):
    type: Literal["encoding.normalize"]
    layer: Union[int, List[int]]
    attribute: str
    options: List[Literal["x", "y"]] = Field(default_factory=list)


Widget = Union[ScaleTypeWidget, NormalizeWidget]


class PlotSize(_SpecModel):
    width: Optional[float] = None
    height: Optional[float] = None
    aspect_ratio: Optional[float] = None


class ChartSpec(_SpecModel):
    title: Optional[str] = None
    plot_size: Optional[PlotSize] = None
    layers: List[Layer] = Field(default_factory=list)
    scale: Dict[Channel, Scale] = Field(default_factory=dict)
    axis: Dict[Literal["x", "y"], Axis] = Field(default_factory=dict)
    selection: Dict[str, Selection] = Field(default_factory=dict)
    widgets: List[Widget] = Field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        """JSON-ready dict; only keys the author set are emitted."""
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


# ---------------------------------------------------------------------------
# Field statistics
# ---------------------------------------------------------------------------

class QuantitativeStats(BaseModel):
    count: int = 0                        # finite values
    min: Optional[float] = None
    max: Optional[float] = None
    mean: Optional[float] = None
    median: Optional[float] = None
    min_positive: Optional[float] = None
    count_non_finite: int = 0             # inf, nan, null


class Level(BaseModel):
    value: str
    count: int


class NominalStats(BaseModel):
    levels: List[Level] = Field(default_factory=list)
    num_other_levels: int = 0
    other_count: int = 0
    null_count: int = 0


class FieldStats(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    field: exp.Expression
    quantitative: Optional[QuantitativeStats] = None
    nominal: Optional[NominalStats] = None


# ---------------------------------------------------------------------------
# Scales
# ---------------------------------------------------------------------------

class ScaleConfig(_SpecModel):
    type: ScaleType = "linear"
    domain: List[Any] = Field(default_factory=list)
    special_values: List[str] = Field(default_factory=list)
    constant: Optional[float] = None
    range: Optional[Union[str, List[Union[float, str]]]] = None


Predicate = Optional[exp.Expression]


class ScaleHints(BaseModel):
    """Partial, mergeable description of a channel's scale."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["quantitative", "nominal"]
    type: Optional[ScaleType] = None
    domain: List[Any] = Field(default_factory=list)
    special_values: List[str] = Field(default_factory=list)
    include_zero: bool = False
    constant: Optional[float] = None
    title: Optional[str] = None
    predicate: Optional[Callable[[Any], Predicate]] = None


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

class DataTable(BaseModel):
    length: int = 0
    columns: Dict[str, List[Any]] = Field(default_factory=dict)

    def rows(self) -> List[Dict[str, Any]]:
        names = list(self.columns)
        return [{n: self.columns[n][i] for n in names} for i in range(self.length)]


class LayerOutputs(_SpecModel):
    key: str
    primitive: Literal["rect", "point", "line", "rule", "area"]
    style: Dict[str, Any] = Field(default_factory=dict)
    data: DataTable
    z_index: float = 0
    interpolate: str = "linear"
    orientation: Optional[Literal["vertical", "horizontal"]] = None
    x_dimension: Optional[Dimension] = None
    y_dimension: Optional[Dimension] = None


class ChartOutputs(_SpecModel):
    scale: Dict[str, ScaleConfig] = Field(default_factory=dict)
    axis: Dict[str, Axis] = Field(default_factory=dict)
    layers: List[LayerOutputs] = Field(default_factory=list)


class ClauseTemplate(BaseModel):
    """A clause before the runtime binds its source and clients."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Any = None
    predicate: Predicate = None


class SelectionOutputs(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    type: Literal["x", "y", "xy"]
    clause: Callable[[Any], Optional[ClauseTemplate]]


# ---------------------------------------------------------------------------
# Persisted application state
# ---------------------------------------------------------------------------

class AppState(_SpecModel):
    version: str
    timestamp: float = Field(default_factory=time.time)
    charts: Dict[str, Any] = Field(default_factory=dict)
    chart_states: Dict[str, Any] = Field(default_factory=dict)
    layout: Optional[str] = None
    layout_states: Dict[str, Any] = Field(default_factory=dict)
    # Derived from the cross-filter; ignored when state is restored.
    predicate: Optional[str] = None


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------

class ChartRequest(BaseModel):
    spec: Dict[str, Any]
    state: Optional[Dict[str, Any]] = None


class UpdateRequest(BaseModel):
    value: Dict[str, Any]
    mode: Literal["merge", "replace"] = "merge"


class WidgetRequest(BaseModel):
    value: Any = None


class ClickRequest(BaseModel):
    selection: str
    axis: Literal["x", "y"]
    value: Any
    additive: bool = False


class DefaultChartsRequest(BaseModel):
    include: Optional[List[str]] = None
    exclude: Optional[List[str]] = None
    override: Dict[str, Optional[Dict[str, Any]]] = Field(default_factory=dict)
