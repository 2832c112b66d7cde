"""
Chart Patterns — Impact Scorer & Categorizer

Ranks surviving candidates by how much they matter now and splits them into
short-term, structural, watchlist and invalidated buckets.

    freshness    = 1 - min(1, bars_since_last_pivot / max_bars_from_last_pivot)
    impact_score = weighted(freshness, completion, type weight, duration boost)
                   x coverage penalty when the pattern spans too little or
                   too much of the analysis window
"""

from __future__ import annotations

import math
from typing import Sequence

import structlog

from chartpatterns.config import DetectionConfig
from chartpatterns.engines.trendlines import clamp01
from chartpatterns.models import (
    Candle,
    ImpactInfo,
    PatternCategory,
    PatternGroups,
    PatternStatus,
    PatternType,
)

log = structlog.get_logger(__name__)

TYPE_WEIGHTS = {
    PatternType.HEAD_AND_SHOULDERS: 1.0,
    PatternType.INVERSE_HEAD_AND_SHOULDERS: 1.0,
    PatternType.TRIPLE_TOP: 0.9,
    PatternType.TRIPLE_BOTTOM: 0.9,
    PatternType.DOUBLE_TOP: 0.8,
    PatternType.DOUBLE_BOTTOM: 0.8,
    PatternType.RISING_WEDGE: 0.75,
    PatternType.FALLING_WEDGE: 0.75,
    PatternType.TRIANGLE_ASCENDING: 0.7,
    PatternType.TRIANGLE_DESCENDING: 0.7,
    PatternType.TRIANGLE_SYMMETRICAL: 0.7,
    PatternType.PENNANT: 0.6,
    PatternType.FLAG: 0.6,
}


class ImpactEngine:
    """Freshness/impact scoring and bucket assignment."""

    def score(self, candidate, candles: Sequence[Candle], config: DetectionConfig):
        """Return a copy of ``candidate`` with ``impact`` populated."""
        last = len(candles) - 1
        bars_since = max(0, last - candidate.last_pivot_index)
        freshness = 1.0 - min(1.0, bars_since / max(1, config.max_bars_from_last_pivot))

        bars = candidate.range.bars
        coverage = bars / max(1, len(candles))
        duration_boost = clamp01(bars / max(1, config.long_pattern_bars))
        w = config.impact_weights
        impact = (
            w.get("freshness", 0.0) * freshness
            + w.get("completion", 0.0) * candidate.completion
            + w.get("type", 0.0) * TYPE_WEIGHTS.get(candidate.type, 0.5)
            + w.get("duration", 0.0) * duration_boost
        )
        if not config.coverage_min <= coverage <= config.coverage_max:
            impact *= config.coverage_penalty

        ref = candles[candidate.range.end_index].close
        height_pct = candidate.pattern_height / ref if math.isfinite(ref) and ref > 0 else 0.0
        magnitude = abs(height_pct) * duration_boost

        info = ImpactInfo(
            freshness=round(freshness, 4),
            impact_score=round(clamp01(impact), 4),
            coverage_ratio=round(coverage, 4),
            bars_since_last_pivot=bars_since,
            magnitude=round(magnitude, 4),
        )
        info.category = self._category(candidate, info, candles, config)
        return candidate.model_copy(update={"impact": info})

    @staticmethod
    def _category(candidate, info: ImpactInfo, candles: Sequence[Candle], config: DetectionConfig) -> PatternCategory:
        if candidate.status == PatternStatus.INVALIDATED:
            return PatternCategory.INVALIDATED
        level = candidate.invalidation_price
        close = candles[-1].close
        if level and math.isfinite(close) and abs(close - level) / abs(level) <= config.near_invalidation_pct:
            return PatternCategory.INVALIDATED
        if info.impact_score >= config.structural_threshold:
            return PatternCategory.STRUCTURAL
        if info.freshness >= config.short_term_freshness and info.magnitude < config.short_term_max_magnitude:
            return PatternCategory.SHORT_TERM
        return PatternCategory.WATCHLIST

    def categorize(self, candidates: Sequence) -> PatternGroups:
        """Split scored candidates into buckets, each ordered by impact."""
        groups = PatternGroups()
        for c in sorted(candidates, key=lambda c: c.impact.impact_score if c.impact else 0.0, reverse=True):
            category = c.impact.category if c.impact else PatternCategory.WATCHLIST
            getattr(groups, category.value).append(c)
        log.debug(
            "impact.categorized",
            short_term=len(groups.short_term),
            structural=len(groups.structural),
            watchlist=len(groups.watchlist),
            invalidated=len(groups.invalidated),
        )
        return groups
