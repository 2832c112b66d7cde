"""
Chart Patterns — Deduplication & Impact Scoring Tests
"""

from __future__ import annotations

import pytest

from synthetic import make_candles


def _neckline(start, end, ptype="double_top", completion=0.5, confidence=0.5, **extra):
    from chartpatterns.models import (
        Direction,
        KeyPivot,
        NecklinePattern,
        PatternRange,
        PatternType,
        PivotKind,
        TrendLine,
    )
    ptype = PatternType(ptype)
    top = ptype == PatternType.DOUBLE_TOP
    mid = (start + end) // 2
    fields = dict(
        type=ptype,
        direction=Direction.BEARISH if top else Direction.BULLISH,
        completion=completion,
        confidence=confidence,
        range=PatternRange(start_index=start, end_index=end),
        key_pivots=[
            KeyPivot(role="peak1", index=start, price=100.0, kind=PivotKind.HIGH),
            KeyPivot(role="neckline", index=mid, price=90.0, kind=PivotKind.LOW),
            KeyPivot(role="peak2", index=end, price=100.0, kind=PivotKind.HIGH),
        ],
        neckline=TrendLine(slope=0.0, intercept=90.0, start_index=start, end_index=end),
        invalidation_price=102.0,
        pattern_height=10.0,
    )
    fields.update(extra)
    return NecklinePattern(**fields)


# ═══════════════════════════════════════════════
#  DEDUPLICATION
# ═══════════════════════════════════════════════

class TestDeduplication:
    """Same-type overlap collapsing."""

    def test_overlap_ratio(self):
        from chartpatterns.engines.dedup import overlap_ratio
        assert overlap_ratio(_neckline(0, 10), _neckline(5, 25)) == pytest.approx(0.5)
        assert overlap_ratio(_neckline(0, 10), _neckline(10, 20)) == 0.0

    def test_overlapping_same_type_keeps_latest(self):
        from chartpatterns.engines.dedup import deduplicate
        out = deduplicate([_neckline(0, 20), _neckline(5, 25)])
        assert len(out) == 1
        assert out[0].range.end_index == 25

    def test_different_types_never_merge(self):
        from chartpatterns.engines.dedup import deduplicate
        out = deduplicate([_neckline(0, 20), _neckline(0, 20, ptype="double_bottom")])
        assert len(out) == 2

    def test_disjoint_ranges_survive(self):
        from chartpatterns.engines.dedup import deduplicate
        assert len(deduplicate([_neckline(0, 10), _neckline(20, 30)])) == 2

    def test_tiebreak_by_completion_then_confidence(self):
        from chartpatterns.engines.dedup import deduplicate
        out = deduplicate([_neckline(0, 20, completion=0.6), _neckline(0, 20, completion=0.8)])
        assert out[0].completion == 0.8
        out = deduplicate([_neckline(0, 20, confidence=0.9), _neckline(0, 20, confidence=0.7)])
        assert out[0].confidence == 0.9

    def test_chained_overlaps_collapse_once(self):
        from chartpatterns.engines.dedup import deduplicate
        chain = [_neckline(0, 10), _neckline(4, 14), _neckline(8, 18)]
        once = deduplicate(chain)
        assert [c.range.end_index for c in once] == [18]
        assert deduplicate(once) == once

    def test_input_order_preserved(self):
        from chartpatterns.engines.dedup import deduplicate
        items = [_neckline(30, 40), _neckline(0, 10, ptype="double_bottom"), _neckline(0, 10)]
        assert deduplicate(items) == items


# ═══════════════════════════════════════════════
#  IMPACT SCORING
# ═══════════════════════════════════════════════

class TestImpactScoring:
    """Freshness, impact and bucket assignment."""

    def _score(self, candidate, closes):
        from chartpatterns.config import DetectionConfig
        from chartpatterns.engines.impact_engine import ImpactEngine
        return ImpactEngine().score(candidate, make_candles(closes), DetectionConfig.completed())

    def test_freshness_decays_with_bars_since_pivot(self):
        fresh = self._score(_neckline(5, 20), [95.0] * 21)
        aged = self._score(_neckline(5, 20), [95.0] * 35)
        stale = self._score(_neckline(5, 20), [95.0] * 60)
        assert fresh.impact.freshness == 1.0
        assert aged.impact.freshness == pytest.approx(1 - 14 / 30, abs=1e-4)
        assert stale.impact.freshness == 0.0
        assert aged.impact.bars_since_last_pivot == 14

    def test_unconfirmed_pivots_fall_back_to_range_end(self):
        from chartpatterns.models import KeyPivot, PivotKind
        pivots = [
            KeyPivot(role="peak1", index=5, price=100.0, kind=PivotKind.HIGH, confirmed=False),
        ]
        scored = self._score(_neckline(5, 20, key_pivots=pivots), [95.0] * 25)
        assert scored.impact.bars_since_last_pivot == 4

    def test_structural(self):
        from chartpatterns.models import PatternCategory
        scored = self._score(_neckline(5, 20, completion=1.0), [95.0] * 21)
        assert scored.impact.impact_score == pytest.approx(0.85, abs=1e-3)
        assert scored.impact.category == PatternCategory.STRUCTURAL

    def test_short_term(self):
        from chartpatterns.models import PatternCategory
        scored = self._score(_neckline(5, 20, completion=0.0), [95.0] * 21)
        assert scored.impact.impact_score < 0.65
        assert scored.impact.magnitude < 0.05
        assert scored.impact.category == PatternCategory.SHORT_TERM

    def test_watchlist(self):
        from chartpatterns.models import PatternCategory
        scored = self._score(_neckline(5, 20, completion=0.0), [95.0] * 35)
        assert scored.impact.category == PatternCategory.WATCHLIST

    def test_invalidated_status(self):
        from chartpatterns.models import PatternCategory, PatternStatus
        scored = self._score(_neckline(5, 20, completion=1.0, status=PatternStatus.INVALIDATED), [95.0] * 21)
        assert scored.impact.category == PatternCategory.INVALIDATED

    def test_near_invalidation_price(self):
        from chartpatterns.models import PatternCategory
        scored = self._score(_neckline(5, 20, completion=1.0), [95.0] * 20 + [101.5])
        assert scored.impact.category == PatternCategory.INVALIDATED

    def test_coverage_penalty(self):
        scored = self._score(_neckline(0, 20, completion=1.0), [95.0] * 21)
        assert scored.impact.coverage_ratio == 1.0
        assert scored.impact.impact_score == pytest.approx(0.8625 * 0.7, abs=1e-3)

    def test_categorize_orders_by_impact(self):
        from chartpatterns.engines.impact_engine import ImpactEngine
        low = self._score(_neckline(5, 20, completion=0.9), [95.0] * 21)
        high = self._score(_neckline(5, 20, completion=1.0, ptype="double_bottom"), [95.0] * 21)
        groups = ImpactEngine().categorize([low, high])
        assert [c.completion for c in groups.structural] == [1.0, 0.9]
        assert groups.short_term == [] and groups.invalidated == []
