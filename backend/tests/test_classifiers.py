"""
Chart Patterns — Classifier Test Suite

Each formation family against a hand-built series with known geometry.
"""

from __future__ import annotations

import pytest

from synthetic import (
    ascending_triangle_closes,
    bull_flag_closes,
    descending_triangle_closes,
    double_top_closes,
    falling_wedge_closes,
    forming_double_top_closes,
    forming_head_and_shoulders_closes,
    head_and_shoulders_closes,
    interpolate,
    make_candles,
    pennant_closes,
    rising_wedge_closes,
    symmetrical_triangle_closes,
)


def _detect(closes, **overrides):
    from chartpatterns.config import DetectionConfig
    from chartpatterns.engines.pattern_engine import PatternEngine
    config = DetectionConfig.completed(**overrides)
    return PatternEngine().detect(make_candles(closes), config)


def _detect_forming(closes, **overrides):
    from chartpatterns.config import DetectionConfig
    from chartpatterns.engines.pattern_engine import PatternEngine
    config = DetectionConfig.forming(**overrides)
    return PatternEngine().detect(make_candles(closes), config)


# ═══════════════════════════════════════════════
#  DOUBLE TOP / BOTTOM
# ═══════════════════════════════════════════════

class TestDoublePatterns:
    """Double top and bottom detection."""

    def test_double_top_geometry(self):
        from chartpatterns.models import PatternType
        result = _detect(double_top_closes(), tolerance_pct=0.02, pivot_depth=3, patterns=["double_top"])
        tops = result.of_type(PatternType.DOUBLE_TOP)
        assert len(tops) == 1
        top = tops[0]
        assert (top.range.start_index, top.range.end_index) == (5, 20)
        assert top.neckline.value_at(12) == pytest.approx(90.0)
        assert top.neckline.slope == 0.0
        assert top.breakout_target == pytest.approx(80.0)
        assert top.direction.value == "bearish"

    def test_scores_are_bounded(self):
        result = _detect(double_top_closes(), tolerance_pct=0.02, pivot_depth=3)
        assert result.patterns
        for p in result.patterns:
            assert 0.0 <= p.completion <= 1.0
            assert 0.0 <= p.confidence <= 1.0

    def test_unequal_peaks_rejected(self):
        from chartpatterns.models import PatternType
        closes = interpolate([(0, 95.0), (5, 100.0), (12, 90.0), (20, 108.0), (29, 104.0)])
        result = _detect(closes, tolerance_pct=0.02, pivot_depth=3, patterns=["double_top"], relaxed_passes=False)
        assert result.of_type(PatternType.DOUBLE_TOP) == []
        assert result.diagnostics.rejections("peaks_not_equal")

    def test_relaxed_pass_flags_warning(self):
        from chartpatterns.models import PatternType
        closes = interpolate([(0, 95.0), (5, 100.0), (12, 90.0), (20, 103.0), (29, 98.0)])
        result = _detect(closes, tolerance_pct=0.02, pivot_depth=3, patterns=["double_top"])
        tops = result.of_type(PatternType.DOUBLE_TOP)
        assert len(tops) == 1
        assert any(w.startswith("relaxed_tolerance_x") for w in tops[0].warnings)

    def test_too_small_rejected(self):
        from chartpatterns.models import PatternType
        closes = interpolate([(0, 99.0), (5, 100.0), (12, 98.5), (20, 100.0), (29, 99.0)])
        result = _detect(closes, tolerance_pct=0.02, pivot_depth=3, patterns=["double_top"])
        assert result.of_type(PatternType.DOUBLE_TOP) == []
        assert result.diagnostics.rejections("pattern_too_small")

    def test_double_bottom(self):
        from chartpatterns.models import PatternType
        closes = [200.0 - c for c in double_top_closes()]
        result = _detect(closes, tolerance_pct=0.02, pivot_depth=3, patterns=["double_bottom"])
        bottoms = result.of_type(PatternType.DOUBLE_BOTTOM)
        assert len(bottoms) == 1
        assert bottoms[0].neckline.value_at(12) == pytest.approx(110.0)
        assert bottoms[0].direction.value == "bullish"


# ═══════════════════════════════════════════════
#  HEAD AND SHOULDERS / TRIPLE
# ═══════════════════════════════════════════════

class TestHeadAndShoulders:
    """Five-pivot head-and-shoulders structure."""

    def test_completed_head_and_shoulders(self):
        from chartpatterns.models import PatternStatus, PatternType
        result = _detect(
            head_and_shoulders_closes(),
            pivot_depth=3, min_bars_between_swings=3, patterns=["head_and_shoulders"],
        )
        hs = result.of_type(PatternType.HEAD_AND_SHOULDERS)
        assert len(hs) == 1
        p = hs[0]
        assert (p.range.start_index, p.range.end_index) == (8, 38)
        assert [k.role for k in p.key_pivots] == [
            "left_shoulder", "neckline_left", "head", "neckline_right", "right_shoulder",
        ]
        assert p.neckline.value_at(30) == pytest.approx(92.0)
        assert p.breakout.breakout_index == 44
        assert p.status == PatternStatus.COMPLETED_ACTIVE
        assert p.completion == 1.0

    def test_head_must_be_prominent(self):
        from chartpatterns.models import PatternType
        closes = interpolate([
            (0, 92.0), (8, 100.0), (14, 92.0), (22, 103.0),
            (30, 92.0), (38, 100.0), (46, 96.0),
        ])
        result = _detect(closes, pivot_depth=3, min_bars_between_swings=3, patterns=["head_and_shoulders"])
        assert result.of_type(PatternType.HEAD_AND_SHOULDERS) == []
        assert result.diagnostics.rejections("head_not_prominent")

    def test_inverse_head_and_shoulders(self):
        from chartpatterns.models import PatternType
        closes = [200.0 - c for c in head_and_shoulders_closes()]
        result = _detect(
            closes, pivot_depth=3, min_bars_between_swings=3,
            patterns=["inverse_head_and_shoulders"],
        )
        inv = result.of_type(PatternType.INVERSE_HEAD_AND_SHOULDERS)
        assert len(inv) == 1
        assert inv[0].breakout.direction == "up"


class TestTriplePatterns:
    """Triple top and bottom with matching intermediate pivots."""

    def test_triple_top(self):
        from chartpatterns.models import PatternType
        closes = interpolate([
            (0, 94.0), (6, 100.0), (11, 92.0), (16, 100.5),
            (21, 92.5), (26, 100.0), (34, 95.0),
        ])
        result = _detect(closes, pivot_depth=3, min_bars_between_swings=3, patterns=["triple_top"])
        triples = result.of_type(PatternType.TRIPLE_TOP)
        assert len(triples) == 1
        t = triples[0]
        assert (t.range.start_index, t.range.end_index) == (6, 26)
        assert t.neckline.value_at(16) == pytest.approx(92.25)
        assert t.confidence >= 0.7

    def test_triple_bottom(self):
        from chartpatterns.models import PatternType
        closes = [200.0 - c for c in interpolate([
            (0, 94.0), (6, 100.0), (11, 92.0), (16, 100.5),
            (21, 92.5), (26, 100.0), (34, 95.0),
        ])]
        result = _detect(closes, pivot_depth=3, min_bars_between_swings=3, patterns=["triple_bottom"])
        triples = result.of_type(PatternType.TRIPLE_BOTTOM)
        assert len(triples) == 1
        t = triples[0]
        assert (t.range.start_index, t.range.end_index) == (6, 26)
        assert t.neckline.value_at(16) == pytest.approx(107.75)
        assert t.breakout_target == pytest.approx(116.0)
        assert t.direction.value == "bullish"

    def test_valley_spread_limits_triple_bottom_only(self):
        from chartpatterns.models import PatternType
        top_closes = interpolate([
            (0, 94.0), (6, 100.0), (11, 92.0), (16, 101.8),
            (21, 92.5), (26, 100.0), (34, 95.0),
        ])
        bottom = _detect(
            [200.0 - c for c in top_closes],
            pivot_depth=3, min_bars_between_swings=3, patterns=["triple_bottom"],
        )
        assert bottom.of_type(PatternType.TRIPLE_BOTTOM) == []
        assert bottom.diagnostics.rejections("valley_spread_excess")
        top = _detect(top_closes, pivot_depth=3, min_bars_between_swings=3, patterns=["triple_top"])
        assert len(top.of_type(PatternType.TRIPLE_TOP)) == 1


# ═══════════════════════════════════════════════
#  TRIANGLES / WEDGES
# ═══════════════════════════════════════════════

class TestConvergingPatterns:
    """Triangles and wedges are mutually exclusive by slope sign."""

    def test_symmetrical_triangle(self):
        from chartpatterns.models import PatternType
        result = _detect(
            symmetrical_triangle_closes(),
            pivot_depth=2, min_bars_between_swings=2, tolerance_pct=0.025,
            patterns=["triangle", "wedge"],
        )
        types = {p.type for p in result.patterns}
        assert types == {PatternType.TRIANGLE_SYMMETRICAL}
        tri = result.patterns[0]
        assert tri.upper_line.slope < 0 < tri.lower_line.slope
        assert tri.upper_line.r_squared > 0.9 and tri.lower_line.r_squared > 0.9
        assert tri.apex_index == pytest.approx(38.67, abs=0.05)

    def test_rising_wedge(self):
        from chartpatterns.models import PatternType
        result = _detect(
            rising_wedge_closes(), pivot_depth=2, min_bars_between_swings=2, patterns=["wedge"],
        )
        wedges = result.of_type(PatternType.RISING_WEDGE)
        assert wedges
        assert result.of_type(PatternType.FALLING_WEDGE) == []
        for w in wedges:
            assert w.direction.value == "bearish"
            assert w.score >= 0.5

    def test_wedge_slope_ratio_bounds(self):
        from chartpatterns.engines.continuation_patterns import ContinuationPatternClassifier
        from chartpatterns.engines.pattern_scoring import ScanContext
        from chartpatterns.engines.pivots import find_pivots
        from chartpatterns.config import DetectionConfig
        from chartpatterns.models import WedgePattern
        candles = make_candles(rising_wedge_closes())
        config = DetectionConfig.completed(pivot_depth=2, patterns=["wedge"])
        ctx = ScanContext(candles=candles, pivots=find_pivots(candles, 2), config=config)
        raw = ContinuationPatternClassifier().detect(ctx)
        assert raw
        for w in raw:
            assert isinstance(w, WedgePattern)
            assert 1.1 <= w.slope_ratio <= 3.0

    def test_rising_wedge_is_not_a_triangle(self):
        result = _detect(rising_wedge_closes(), pivot_depth=2, min_bars_between_swings=2, patterns=["triangle"])
        assert result.patterns == []
        assert result.diagnostics.rejections("same_direction_slopes")

    def test_ascending_triangle(self):
        from chartpatterns.models import PatternType
        result = _detect(
            ascending_triangle_closes(), pivot_depth=2, min_bars_between_swings=2, patterns=["triangle"],
        )
        assert {p.type for p in result.patterns} == {PatternType.TRIANGLE_ASCENDING}
        tri = result.patterns[0]
        assert tri.upper_line.slope == 0.0
        assert tri.upper_line.value_at(27) == pytest.approx(110.0)
        assert tri.lower_line.slope > 0
        assert tri.direction.value == "bullish"
        assert tri.breakout_target == pytest.approx(127.93, abs=0.01)
        assert tri.apex_index == pytest.approx(58.0, abs=0.05)

    def test_descending_triangle(self):
        from chartpatterns.models import PatternType
        result = _detect(
            descending_triangle_closes(), pivot_depth=2, min_bars_between_swings=2, patterns=["triangle"],
        )
        assert {p.type for p in result.patterns} == {PatternType.TRIANGLE_DESCENDING}
        tri = result.patterns[0]
        assert tri.lower_line.slope == 0.0
        assert tri.upper_line.slope < 0
        assert tri.direction.value == "bearish"
        assert tri.breakout_target == pytest.approx(72.07, abs=0.01)

    def test_falling_wedge(self):
        from chartpatterns.models import PatternType
        result = _detect(
            falling_wedge_closes(), pivot_depth=2, min_bars_between_swings=2, patterns=["wedge"],
        )
        wedges = result.of_type(PatternType.FALLING_WEDGE)
        assert wedges
        assert result.of_type(PatternType.RISING_WEDGE) == []
        for w in wedges:
            assert w.direction.value == "bullish"
            assert w.upper_line.slope < w.lower_line.slope < 0
            assert w.breakout_target > w.upper_line.value_at(w.range.end_index)



# ═══════════════════════════════════════════════
#  PENNANT / FLAG
# ═══════════════════════════════════════════════

class TestPoleContinuation:
    """Consolidation after a strong pole."""

    def test_bull_flag(self):
        from chartpatterns.models import PatternType
        result = _detect(bull_flag_closes(), pivot_depth=2, patterns=["flag", "pennant"])
        flags = result.of_type(PatternType.FLAG)
        assert len(flags) == 1
        flag = flags[0]
        assert flag.direction.value == "bullish"
        assert flag.pole_change_pct >= 8.0
        assert flag.upper_line.slope < 0 and flag.lower_line.slope < 0
        assert flag.range.end_index == 32
        assert result.of_type(PatternType.PENNANT) == []

    def test_pennant(self):
        from chartpatterns.models import PatternStatus, PatternType
        result = _detect(pennant_closes(), pivot_depth=2, patterns=["flag", "pennant"])
        pennants = result.of_type(PatternType.PENNANT)
        assert len(pennants) == 1
        p = pennants[0]
        assert p.direction.value == "bullish"
        assert p.upper_line.slope < 0 < p.lower_line.slope
        assert p.range.end_index == 32
        assert p.apex_index == pytest.approx(35.0)
        assert p.status == PatternStatus.NEAR_COMPLETION
        assert result.of_type(PatternType.FLAG) == []

    def test_no_pole_no_pattern(self):
        closes = [100.0 + (0.3 if i % 2 else -0.3) for i in range(40)]
        result = _detect(closes, pivot_depth=2, patterns=["flag", "pennant"])
        assert result.patterns == []


# ═══════════════════════════════════════════════
#  FORMING MODE
# ═══════════════════════════════════════════════

class TestFormingMode:
    """Early-warning variants with a provisional final pivot."""

    def test_forming_double_top(self):
        from chartpatterns.models import DetectionMode, PatternStatus, PatternType
        closes = forming_double_top_closes()
        result = _detect_forming(closes, patterns=["double_top"])
        tops = result.of_type(PatternType.DOUBLE_TOP)
        assert len(tops) == 1
        top = tops[0]
        assert top.mode == DetectionMode.FORMING
        assert top.range.end_index == len(closes) - 1
        assert top.key_pivots[-1].confirmed is False
        assert "second_peak_unconfirmed" in top.warnings
        assert top.status == PatternStatus.NEAR_COMPLETION
        assert top.invalidation_price == pytest.approx(101.2)

    def test_forming_head_and_shoulders(self):
        from chartpatterns.models import PatternType
        result = _detect_forming(forming_head_and_shoulders_closes(), patterns=["head_and_shoulders"])
        hs = result.of_type(PatternType.HEAD_AND_SHOULDERS)
        assert len(hs) == 1
        p = hs[0]
        assert "right_shoulder_unconfirmed" in p.warnings
        assert p.key_pivots[-1].role == "right_shoulder"
        assert p.key_pivots[-1].confirmed is False
        assert p.range.start_index == 8

    def test_completed_mode_skips_forming_variants(self):
        result = _detect(forming_double_top_closes(), patterns=["double_top"], pivot_depth=3)
        assert result.patterns == []

    def test_min_completion_floor(self):
        result = _detect_forming(forming_double_top_closes(), patterns=["double_top"], min_completion=0.99)
        assert result.patterns == []


# ═══════════════════════════════════════════════
#  SCORING HELPERS
# ═══════════════════════════════════════════════

class TestDurationScore:
    """Formation length from timestamps or bar counts."""

    def test_calendar_days_when_comparable(self):
        from datetime import datetime, timezone
        from chartpatterns.engines.pattern_scoring import duration_score
        candles = make_candles([100.0] * 4, start=datetime(2024, 1, 1, tzinfo=timezone.utc))
        candles[3] = candles[3].model_copy(update={"timestamp": datetime(2024, 2, 10, tzinfo=timezone.utc)})
        assert duration_score(candles, 0, 3) == 0.7

    def test_mixed_timezones_fall_back_to_bars(self):
        from datetime import datetime, timezone
        from chartpatterns.engines.pattern_scoring import duration_score
        candles = make_candles([100.0] * 4)
        candles[3] = candles[3].model_copy(update={"timestamp": datetime(2024, 2, 10, tzinfo=timezone.utc)})
        assert duration_score(candles, 0, 3) == 0.6

    def test_mixed_timezones_through_detect(self):
        from datetime import datetime, timezone
        from chartpatterns.config import DetectionConfig
        from chartpatterns.engines.pattern_engine import PatternEngine
        candles = make_candles(double_top_closes())
        candles[20] = candles[20].model_copy(update={"timestamp": datetime(2024, 1, 21, tzinfo=timezone.utc)})
        config = DetectionConfig.completed(tolerance_pct=0.02, pivot_depth=3, patterns=["double_top"])
        result = PatternEngine().detect(candles, config)
        assert len(result.patterns) == 1
