"""
Concrete scales and tick generation.

A position scale binds a ``ScaleConfig`` to a pixel range. Ranges are given
in screen order: ``(left, right)`` for x and ``(top, bottom)`` for y, so
larger values sit further right on x and higher up on y. Special values
("n/a", "(null)", ...) get their own reserved bands next to the origin: at
the start of the x range and at the end of the y range.

Positions are computed as "linear positions" ``(t, offset)``: a fraction of
the range plus a pixel offset, resolved against the range at the end. This
keeps the fixed-size special bands independent of the plot size.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.config import (
    BAND_PADDING,
    DEFAULT_SIZE_RANGE,
    DEFAULT_SYMLOG_CONSTANT,
    DEFAULT_TICK_COUNT,
    SPECIAL_BAND_GAP,
    SPECIAL_BAND_SIZE,
    SYMLOG_LINEAR_FACTOR,
    SYMLOG_NARROW_RATIO,
    SYMLOG_START_FACTOR,
)
from core.models import ScaleConfig
from core.utils import is_finite_number
from skills.binning import ScaleTransform

LinearPosition = Tuple[float, float]

_E10 = math.sqrt(50)
_E5 = math.sqrt(10)
_E2 = math.sqrt(2)


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------

def tick_increment(start: float, stop: float, count: int) -> float:
    """Tick step; negative values are inverse steps (``-10`` means 0.1)."""
    if count <= 0:
        return 0.0
    step = (stop - start) / count
    if not math.isfinite(step) or step <= 0:
        return 0.0
    power = math.floor(math.log10(step))
    error = step / 10.0 ** power
    factor = 10 if error >= _E10 else 5 if error >= _E5 else 2 if error >= _E2 else 1
    if power >= 0:
        return factor * 10.0 ** power
    return -(10.0 ** -power) / factor


def linear_ticks(start: float, stop: float, count: int = DEFAULT_TICK_COUNT) -> List[float]:
    if start == stop:
        return [start]
    reverse = stop < start
    if reverse:
        start, stop = stop, start
    inc = tick_increment(start, stop, count)
    if inc == 0:
        return []
    if inc > 0:
        i0, i1 = math.ceil(start / inc), math.floor(stop / inc)
        ticks = [(i0 + i) * inc for i in range(i1 - i0 + 1)]
    else:
        inc = -inc
        i0, i1 = math.ceil(start * inc), math.floor(stop * inc)
        ticks = [(i0 + i) / inc for i in range(i1 - i0 + 1)]
    return ticks[::-1] if reverse else ticks


def log_ticks(start: float, stop: float, count: int = DEFAULT_TICK_COUNT) -> List[float]:
    """Base-10 ticks for a positive domain."""
    if start <= 0 or stop <= 0:
        return []
    if stop < start:
        start, stop = stop, start
    i, j = math.log10(start), math.log10(stop)
    if j - i < count:
        ticks: List[float] = []
        for e in range(math.floor(i), math.ceil(j) + 1):
            for k in range(1, 10):
                t = k * 10.0 ** e if e >= 0 else k / 10.0 ** -e
                if t < start:
                    continue
                if t > stop:
                    break
                ticks.append(t)
        if len(ticks) * 2 < count:
            ticks = linear_ticks(start, stop, count)
        return ticks
    return [10.0 ** e for e in linear_ticks(i, j, int(min(j - i, count)))]


def symlog_ticks(
    domain: Sequence[float],
    constant: float = DEFAULT_SYMLOG_CONSTANT,
    count: int = DEFAULT_TICK_COUNT,
) -> List[float]:
    """Ticks for a symlog scale.

    Narrow same-sign domains and domains inside ``[-5c, 5c]`` use linear
    ticks. Otherwise each side beyond the linear region gets its own log
    ticks starting at ``2c`` (half the count each when both sides exist),
    plus zero.
    """
    lo, hi = min(domain[0], domain[1]), max(domain[0], domain[1])
    if (lo > 0 and hi > 0 and lo / hi > SYMLOG_NARROW_RATIO) or (
        lo < 0 and hi < 0 and hi / lo > SYMLOG_NARROW_RATIO
    ):
        return linear_ticks(lo, hi, count)

    threshold = SYMLOG_LINEAR_FACTOR * constant
    start = SYMLOG_START_FACTOR * constant
    if lo >= -threshold and hi <= threshold:
        return linear_ticks(lo, hi, count)

    if lo < -threshold and hi > threshold:
        count = math.ceil(count / 2)
    negative = [-t for t in log_ticks(start, -lo, count)] if lo < -threshold else []
    positive = log_ticks(start, hi, count) if hi > threshold else []
    ticks = sorted(negative + [0.0] + positive)
    return [t for t in ticks if lo <= t <= hi]


# ---------------------------------------------------------------------------
# Position scales
# ---------------------------------------------------------------------------

def _interpolate(a: LinearPosition, b: LinearPosition, t: float) -> LinearPosition:
    return (a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t)


def _dedupe(values: Sequence[Any]) -> List[Any]:
    out: List[Any] = []
    for v in values:
        if v not in out:
            out.append(v)
    return out


class PositionScale:
    """A scale bound to a pixel range, with apply / apply_band / invert."""

    def __init__(self, config: ScaleConfig, range: Tuple[float, float], dimension: str) -> None:
        self.type = config.type
        self.domain = list(config.domain)
        self.special_values = _dedupe(config.special_values)
        self.range = (float(range[0]), float(range[1]))
        self.dimension = dimension
        self._base, self._special = self._bands()

    # Layout ------------------------------------------------------------

    def _bands(self) -> Tuple[Tuple[LinearPosition, LinearPosition], Dict[str, Tuple[LinearPosition, LinearPosition]]]:
        base: Tuple[LinearPosition, LinearPosition] = ((0.0, 0.0), (1.0, 0.0))
        special: Dict[str, Tuple[LinearPosition, LinearPosition]] = {}
        n = len(self.special_values)
        if n == 0 or self.type == "band":
            return base, special
        length = n * SPECIAL_BAND_SIZE
        if self.dimension == "x":
            base = ((0.0, length + SPECIAL_BAND_GAP), (1.0, 0.0))
            band = ((0.0, 0.0), (0.0, length))
        else:
            base = ((0.0, 0.0), (1.0, -length - SPECIAL_BAND_GAP))
            band = ((1.0, -length), (1.0, 0.0))
        for i, value in enumerate(self.special_values):
            special[value] = (
                _interpolate(band[0], band[1], (i + 0.1) / n),
                _interpolate(band[0], band[1], (i + 0.9) / n),
            )
        return base, special

    def _resolve(self, position: LinearPosition) -> float:
        r0, r1 = self.range
        return position[0] * (r1 - r0) + r0 + position[1]

    @property
    def range_bands(self) -> List[Tuple[float, float]]:
        bands = [(self._resolve(self._base[0]), self._resolve(self._base[1]))]
        if self._special:
            first = list(self._special.values())[0][0]
            last = list(self._special.values())[-1][1]
            bands.append((self._resolve(first), self._resolve(last)))
        return bands

    # Band scales ---------------------------------------------------------

    @property
    def _band_domain(self) -> List[Any]:
        return _dedupe(self.domain + self.special_values)

    def _band_layout(self) -> Tuple[float, float, float]:
        n = len(self._band_domain)
        step = 1.0 / max(1.0, n - BAND_PADDING + 2 * BAND_PADDING)
        start = (1.0 - step * (n - BAND_PADDING)) / 2
        return start, step, step * (1 - BAND_PADDING)

    # Continuous scales -------------------------------------------------

    def _transform(self) -> ScaleTransform:
        return ScaleTransform(self.type)

    def _normalize(self, value: float) -> float:
        f = self._transform()
        d0, d1 = f.forward(self.domain[0]), f.forward(self.domain[1])
        if d1 == d0:
            return 0.5
        t = (f.forward(value) - d0) / (d1 - d0)
        return t if self.dimension == "x" else 1.0 - t

    def _continuous(self, value: float) -> LinearPosition:
        return _interpolate(self._base[0], self._base[1], self._normalize(value))

    # Public API ----------------------------------------------------------

    def apply(self, value: Any) -> Optional[float]:
        if self.type == "band":
            band = self.apply_band(value)
            return None if band is None else (band[0] + band[1]) / 2
        if isinstance(value, str):
            band = self._special.get(value)
            if band is None:
                return None
            return (self._resolve(band[0]) + self._resolve(band[1])) / 2
        if isinstance(value, (list, tuple)) and len(value) >= 2:
            p0, p1 = self.apply(value[0]), self.apply(value[1])
            return None if p0 is None or p1 is None else (p0 + p1) / 2
        if not is_finite_number(value) or (self.type == "log" and value <= 0):
            return None
        return self._resolve(self._continuous(float(value)))

    def apply_band(self, value: Any) -> Optional[Tuple[float, float]]:
        if self.type == "band":
            domain = self._band_domain
            if value not in domain:
                return None
            start, step, bandwidth = self._band_layout()
            t0 = start + step * domain.index(value)
            p0, p1 = self._resolve((t0, 0.0)), self._resolve((t0 + bandwidth, 0.0))
            return (min(p0, p1), max(p0, p1))
        if isinstance(value, str):
            band = self._special.get(value)
            if band is None:
                return None
            p0, p1 = self._resolve(band[0]), self._resolve(band[1])
        elif isinstance(value, (list, tuple)) and len(value) >= 2:
            p0, p1 = self.apply(value[0]), self.apply(value[1])
            if p0 is None or p1 is None:
                return None
        else:
            p = self.apply(value)
            if p is None:
                return None
            p0 = p1 = p
        return (min(p0, p1), max(p0, p1))

    def invert(self, position: float, kind: Optional[str] = None) -> Any:
        """Value at a pixel position; ``kind`` restricts to "string" or "number" results."""
        r0, r1 = self.range
        if self.type == "band":
            start, step, _ = self._band_layout()
            t = (position - r0) / (r1 - r0)
            index = math.floor((t - start) / step)
            domain = self._band_domain
            return domain[index] if 0 <= index < len(domain) else None
        if kind != "number":
            for value, (a, b) in self._special.items():
                p0, p1 = self._resolve(a), self._resolve(b)
                if min(p0, p1) <= position <= max(p0, p1):
                    return value
        if kind == "string":
            return None
        b0, b1 = self._resolve(self._base[0]), self._resolve(self._base[1])
        u = (position - b0) / (b1 - b0)
        t = u if self.dimension == "x" else 1.0 - u
        f = self._transform()
        d0, d1 = f.forward(self.domain[0]), f.forward(self.domain[1])
        return f.reverse(d0 + t * (d1 - d0))

    def ticks(self, count: int = DEFAULT_TICK_COUNT) -> List[Any]:
        if self.type == "band":
            return self._band_domain
        lo, hi = self.domain[0], self.domain[1]
        if self.type == "log":
            return log_ticks(lo, hi, count)
        if self.type == "symlog":
            return symlog_ticks((lo, hi), DEFAULT_SYMLOG_CONSTANT, count)
        return linear_ticks(lo, hi, count)


class SymlogPositionScale(PositionScale):
    def __init__(self, config: ScaleConfig, range: Tuple[float, float], dimension: str) -> None:
        self.constant = config.constant if config.constant is not None else DEFAULT_SYMLOG_CONSTANT
        super().__init__(config, range, dimension)

    def _transform(self) -> ScaleTransform:
        return ScaleTransform("symlog", self.constant)

    def ticks(self, count: int = DEFAULT_TICK_COUNT) -> List[Any]:
        return symlog_ticks((self.domain[0], self.domain[1]), self.constant, count)


def make_position_scale(config: ScaleConfig, range: Tuple[float, float], dimension: str) -> PositionScale:
    if config.type not in ("linear", "log", "symlog", "band"):
        raise ValueError(f"invalid scale type: {config.type}")
    if config.type == "symlog":
        return SymlogPositionScale(config, range, dimension)
    return PositionScale(config, range, dimension)


# ---------------------------------------------------------------------------
# Size scales
# ---------------------------------------------------------------------------

def make_size_scale(config: ScaleConfig) -> Callable[[Any], Optional[float]]:
    size_range = DEFAULT_SIZE_RANGE
    if isinstance(config.range, list) and len(config.range) == 2:
        r0, r1 = config.range
        if is_finite_number(r0) and is_finite_number(r1):
            size_range = (float(r0), float(r1))

    if config.type == "band":
        n = len(config.domain)
        sizes = {
            value: (i + 1) / n * (size_range[1] - size_range[0]) + size_range[0]
            for i, value in enumerate(config.domain)
        }
        return lambda value: sizes.get(value, 1.0)

    scale = make_position_scale(config.model_copy(update={"special_values": []}), size_range, "x")
    return scale.apply
