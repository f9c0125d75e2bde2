"""
Tests for scale hint merging, scale inference, concrete scales and ticks.
"""

import functools
import itertools

import pytest

from core.models import ChartSpec, DataTable, LayerOutputs, Scale, ScaleConfig, ScaleHints
from core.utils import structural_key
from skills.scale_inference import chart_outputs, infer_scale, merge_hints_into, merge_scale_hints
from skills.scales import (
    linear_ticks,
    log_ticks,
    make_position_scale,
    make_size_scale,
    symlog_ticks,
    tick_increment,
)


def _members(values):
    return {structural_key(v) for v in values}


class TestMergeScaleHints:
    """Merging is order-independent for domain, special values, zero and kind."""

    HINTS = [
        ScaleHints(kind="quantitative", domain=[[0, 10]], include_zero=True, title="a"),
        ScaleHints(kind="quantitative", domain=[[5, 20], 3], special_values=["n/a"]),
        ScaleHints(kind="nominal", domain=["x", "y"], special_values=["(null)"], title="b"),
        ScaleHints(kind="quantitative", domain=[3], special_values=["n/a"], title="a"),
    ]

    def _merge_all(self, hints):
        return functools.reduce(merge_scale_hints, hints)

    def test_all_orderings_agree(self):
        results = [self._merge_all(p) for p in itertools.permutations(self.HINTS)]
        for r in results:
            assert _members(r.domain) == _members(results[0].domain)
            assert set(r.special_values) == {"n/a", "(null)"}
            assert r.include_zero is True
            assert r.kind == "nominal"

    def test_associative(self):
        a, b, c, _ = self.HINTS
        left = merge_scale_hints(merge_scale_hints(a, b), c)
        right = merge_scale_hints(a, merge_scale_hints(b, c))
        assert _members(left.domain) == _members(right.domain)
        assert set(left.special_values) == set(right.special_values)

    def test_domain_deduplicated(self):
        merged = merge_scale_hints(self.HINTS[1], self.HINTS[3])
        assert merged.domain == [[5, 20], 3]

    def test_titles_joined_once(self):
        assert merge_scale_hints(self.HINTS[0], self.HINTS[3]).title == "a"
        assert self._merge_all(self.HINTS[:3]).title == "a, b"

    def test_first_scalar_setting_wins(self):
        a = ScaleHints(kind="quantitative", type="log")
        b = ScaleHints(kind="quantitative", type="linear", constant=2.0)
        merged = merge_scale_hints(a, b)
        assert merged.type == "log"
        assert merged.constant == 2.0

    def test_merge_into_adds_new_channels(self):
        target = {"x": ScaleHints(kind="quantitative", domain=[1])}
        merge_hints_into(target, {"x": ScaleHints(kind="quantitative", domain=[2]), "y": ScaleHints(kind="nominal")})
        assert target["x"].domain == [1, 2]
        assert target["y"].kind == "nominal"


class TestInferScale:
    def test_quantitative_from_data(self):
        config = infer_scale(None, ScaleHints(kind="quantitative"), [[[1, 2], [2, 5]], [3, None, "n/a"]], "x")
        assert config.type == "linear"
        assert config.domain == [1, 5]

    def test_no_data(self):
        config = infer_scale(None, ScaleHints(kind="quantitative"), [], "y")
        assert config.domain == [0.0, 1.0]

    @pytest.mark.parametrize("value,expected", [
        (5.0, [0.0, 5.0]),
        (-5.0, [-5.0, 0.0]),
        (0.0, [0.0, 1.0]),
    ])
    def test_single_point_extends_to_zero(self, value, expected):
        config = infer_scale(None, ScaleHints(kind="quantitative"), [[value]], "x")
        assert config.domain == expected

    def test_include_zero(self):
        config = infer_scale(None, ScaleHints(kind="quantitative", include_zero=True), [[3, 8]], "y")
        assert config.domain == [0.0, 8.0]

    def test_size_channel_includes_zero(self):
        config = infer_scale(None, ScaleHints(kind="quantitative"), [[-8, -3]], "size")
        assert config.domain == [-8.0, 0.0]

    def test_nominal_excludes_special_values(self):
        hints = ScaleHints(kind="nominal", domain=["a"], special_values=["(null)"])
        config = infer_scale(None, hints, [["b", "(null)", "a", 3]], "color")
        assert config.type == "band"
        assert config.domain == ["a", "b"]
        assert config.special_values == ["(null)"]

    def test_spec_overrides(self):
        spec = Scale(type="log", domain=[1, 1000], special_values=[], constant=3)
        hints = ScaleHints(kind="quantitative", type="linear", special_values=["n/a"])
        config = infer_scale(spec, hints, [[5, 50]], "x")
        assert config.type == "log"
        assert config.domain == [1, 1000]
        assert config.special_values == []
        assert config.constant == 3


class TestChartOutputs:
    def test_axis_title_from_hints_and_spec(self):
        spec = ChartSpec.model_validate({
            "layers": [{"mark": "point", "encoding": {"x": {"field": "a"}, "y": {"field": "b"}}}],
            "axis": {"y": {"title": "Custom"}},
        })
        hints = {
            "x": ScaleHints(kind="quantitative", title="a"),
            "y": ScaleHints(kind="quantitative", title="b"),
        }
        layer = LayerOutputs(
            key="0", primitive="point", data=DataTable(length=2, columns={"x": [1, 4], "y": [2, 3]})
        )
        outputs = chart_outputs(spec, hints, [layer])
        assert outputs.axis["x"].title == "a"
        assert outputs.axis["y"].title == "Custom"
        assert outputs.scale["x"].domain == [1, 4]
        assert outputs.scale["y"].domain == [2, 3]

    def test_missing_layers_skipped(self):
        spec = ChartSpec.model_validate({"layers": [{"mark": "point", "encoding": {"x": {"field": "a"}}}]})
        outputs = chart_outputs(spec, {"x": ScaleHints(kind="quantitative")}, [None])
        assert outputs.layers == []
        assert outputs.scale["x"].domain == [0.0, 1.0]


class TestPositionScales:
    def test_linear_x(self):
        scale = make_position_scale(ScaleConfig(type="linear", domain=[0, 10]), (0, 100), "x")
        assert scale.apply(5) == pytest.approx(50)
        assert scale.apply([2, 4]) == pytest.approx(30)
        assert scale.apply_band([2, 4]) == pytest.approx((20, 40))
        assert scale.invert(50) == pytest.approx(5)

    def test_linear_y_grows_upward(self):
        scale = make_position_scale(ScaleConfig(type="linear", domain=[0, 10]), (0, 100), "y")
        assert scale.apply(10) == pytest.approx(0)
        assert scale.apply(0) == pytest.approx(100)
        assert scale.invert(25) == pytest.approx(7.5)

    def test_special_band_on_x_start(self):
        config = ScaleConfig(type="linear", domain=[0, 10], special_values=["n/a"])
        scale = make_position_scale(config, (0, 100), "x")
        assert scale.apply(0) == pytest.approx(28)
        assert scale.apply(10) == pytest.approx(100)
        assert scale.apply("n/a") == pytest.approx(10)
        assert scale.apply_band("n/a") == pytest.approx((2, 18))
        assert scale.invert(10) == "n/a"
        assert scale.invert(10, "number") < 0
        assert scale.range_bands == [pytest.approx((28, 100)), pytest.approx((2, 18))]

    def test_special_band_on_y_end(self):
        config = ScaleConfig(type="linear", domain=[0, 10], special_values=["n/a"])
        scale = make_position_scale(config, (0, 100), "y")
        assert scale.apply(0) == pytest.approx(72)
        assert scale.apply(10) == pytest.approx(0)
        assert scale.apply("n/a") == pytest.approx(90)
        assert scale.invert(90, "string") == "n/a"

    def test_log(self):
        scale = make_position_scale(ScaleConfig(type="log", domain=[1, 100]), (0, 100), "x")
        assert scale.apply(10) == pytest.approx(50)
        assert scale.invert(50) == pytest.approx(10)
        assert scale.apply(0) is None

    def test_symlog_is_symmetric(self):
        scale = make_position_scale(ScaleConfig(type="symlog", domain=[-100, 100], constant=1), (0, 200), "x")
        assert scale.apply(0) == pytest.approx(100)
        assert scale.apply(-30) + scale.apply(30) == pytest.approx(200)

    def test_band(self):
        config = ScaleConfig(type="band", domain=["a", "b"], special_values=["(null)"])
        scale = make_position_scale(config, (0, 300), "x")
        a, b, null = scale.apply_band("a"), scale.apply_band("b"), scale.apply_band("(null)")
        assert a[1] <= b[0] <= b[1] <= null[0]
        assert b[1] - b[0] == pytest.approx(a[1] - a[0])
        assert scale.apply("c") is None
        assert scale.invert(scale.apply("b")) == "b"
        assert scale.ticks() == ["a", "b", "(null)"]

    def test_invalid_type(self):
        with pytest.raises(ValueError):
            make_position_scale(ScaleConfig.model_construct(type="time", domain=[0, 1]), (0, 1), "x")


class TestTicks:
    def test_tick_increment(self):
        assert tick_increment(0, 10, 5) == 2
        assert tick_increment(0, 1, 5) == -5

    def test_linear_ticks(self):
        assert linear_ticks(0, 10, 5) == [0, 2, 4, 6, 8, 10]
        assert linear_ticks(0, 1, 5) == pytest.approx([0, 0.2, 0.4, 0.6, 0.8, 1.0])
        assert linear_ticks(10, 0, 5) == [10, 8, 6, 4, 2, 0]
        assert linear_ticks(3, 3) == [3]

    def test_log_ticks(self):
        ticks = log_ticks(1, 1000, 5)
        assert {1, 10, 100, 1000} <= set(ticks)
        assert all(1 <= t <= 1000 for t in ticks)
        assert log_ticks(-1, 10) == []

    def test_log_ticks_wide_domain(self):
        ticks = log_ticks(1, 1e12, 4)
        assert ticks[0] == pytest.approx(1)
        assert all(b / a >= 10 for a, b in zip(ticks, ticks[1:]))

    def test_symlog_narrow_domain_is_linear(self):
        assert symlog_ticks([100, 150], 1, 5) == linear_ticks(100, 150, 5)

    def test_symlog_inside_linear_region(self):
        assert symlog_ticks([-4, 4], 1, 5) == linear_ticks(-4, 4, 5)

    def test_symlog_both_sides(self):
        ticks = symlog_ticks([-1000, 1000], 1, 6)
        assert 0.0 in ticks
        assert ticks == sorted(ticks)
        assert all(-1000 <= t <= 1000 for t in ticks)
        assert any(t < 0 for t in ticks) and any(t > 0 for t in ticks)
        assert min(abs(t) for t in ticks if t != 0) >= 2

    def test_scale_ticks(self):
        scale = make_position_scale(ScaleConfig(type="linear", domain=[0, 10]), (0, 100), "x")
        assert scale.ticks(5) == [0, 2, 4, 6, 8, 10]


class TestSizeScale:
    def test_continuous(self):
        size = make_size_scale(ScaleConfig(type="linear", domain=[0, 10], range=[0, 100]))
        assert size(5) == pytest.approx(50)

    def test_default_range(self):
        size = make_size_scale(ScaleConfig(type="linear", domain=[0, 10]))
        assert size(10) == pytest.approx(1000)

    def test_band(self):
        size = make_size_scale(ScaleConfig(type="band", domain=["a", "b"], range=[0, 10]))
        assert size("a") == pytest.approx(5)
        assert size("b") == pytest.approx(10)
        assert size("zzz") == 1.0
