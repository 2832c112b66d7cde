"""
Chart Patterns — Shared Classifier Scoring

Scan context handed to every classifier, plus the confidence and completion
blends the formation families share.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from chartpatterns.config import DetectionConfig
from chartpatterns.engines.pivots import candle_arrays, last_trend
from chartpatterns.engines.trendlines import clamp01
from chartpatterns.models import (
    Candle,
    DetectionDiagnostics,
    Direction,
    KeyPivot,
    PatternRange,
    PatternType,
    Pivot,
)


# ──────────────────────────────────────────────
# Scan Context
# ──────────────────────────────────────────────

@dataclass
class ScanContext:
    """Everything a classifier needs for one detection call."""
    candles: Sequence[Candle]
    pivots: list[Pivot]
    config: DetectionConfig
    diagnostics: DetectionDiagnostics = field(default_factory=DetectionDiagnostics)
    highs: np.ndarray = field(init=False)
    lows: np.ndarray = field(init=False)
    closes: np.ndarray = field(init=False)

    def __post_init__(self):
        self.highs, self.lows, self.closes = candle_arrays(self.candles)

    @property
    def last_index(self) -> int:
        return len(self.candles) - 1

    @property
    def last_close(self) -> float:
        return float(self.closes[-1])

    def trend(self, bars: int = 3) -> int:
        return last_trend(self.closes, bars)

    def make_range(self, start: int, end: int) -> PatternRange:
        return PatternRange(
            start_index=start,
            end_index=end,
            start_time=self.candles[start].timestamp,
            end_time=self.candles[end].timestamp,
        )

    def key_pivot(self, role: str, pivot: Pivot, confirmed: Optional[bool] = None) -> KeyPivot:
        if confirmed is None:
            confirmed = self.last_index - pivot.index >= self.config.confirm_bars
        return KeyPivot(
            role=role, index=pivot.index, price=pivot.price,
            kind=pivot.kind, confirmed=confirmed,
        )


# ──────────────────────────────────────────────
# Confidence
# ──────────────────────────────────────────────

TYPE_FACTORS = {
    PatternType.HEAD_AND_SHOULDERS: 1.1,
    PatternType.INVERSE_HEAD_AND_SHOULDERS: 1.1,
    PatternType.TRIPLE_TOP: 1.05,
    PatternType.TRIPLE_BOTTOM: 1.05,
    PatternType.TRIANGLE_ASCENDING: 0.95,
    PatternType.TRIANGLE_DESCENDING: 0.95,
    PatternType.TRIANGLE_SYMMETRICAL: 0.95,
    PatternType.PENNANT: 0.95,
    PatternType.FLAG: 0.95,
}

BULLISH_TYPES = frozenset({
    PatternType.DOUBLE_BOTTOM,
    PatternType.TRIPLE_BOTTOM,
    PatternType.INVERSE_HEAD_AND_SHOULDERS,
    PatternType.TRIANGLE_ASCENDING,
    PatternType.FALLING_WEDGE,
})

BEARISH_TYPES = frozenset({
    PatternType.DOUBLE_TOP,
    PatternType.TRIPLE_TOP,
    PatternType.HEAD_AND_SHOULDERS,
    PatternType.TRIANGLE_DESCENDING,
    PatternType.RISING_WEDGE,
})


def direction_for(pattern_type: PatternType) -> Direction:
    if pattern_type in BULLISH_TYPES:
        return Direction.BULLISH
    if pattern_type in BEARISH_TYPES:
        return Direction.BEARISH
    return Direction.NEUTRAL


def duration_score(candles: Sequence[Candle], start: int, end: int) -> float:
    """Formation-length appropriateness: too short or too long scores lower.

    Uses calendar days when both ends carry comparable timestamps, bar counts
    otherwise (missing, or one tz-aware and one naive).
    """
    a, b = candles[start].timestamp, candles[end].timestamp
    if a is not None and b is not None and (a.tzinfo is None) == (b.tzinfo is None):
        span = abs((b - a).total_seconds()) / 86400.0
    else:
        span = float(end - start)
    if span < 5:
        return 0.6
    if span < 15:
        return 0.8
    if span < 30:
        return 0.9
    return 0.7


def finalize_confidence(raw: float, pattern_type: PatternType, penalty: float = 1.0) -> float:
    """Apply the per-type reliability factor, clamp and round."""
    return round(clamp01(raw * TYPE_FACTORS.get(pattern_type, 1.0) * penalty), 2)


def blend_confidence(margin: float, symmetry: float, duration: float) -> float:
    return (clamp01(margin) + clamp01(symmetry) + clamp01(duration)) / 3.0


# ──────────────────────────────────────────────
# Completion
# ──────────────────────────────────────────────

TREND_BONUS = 0.2
TREND_PENALTY = 0.1


def completion_from_progress(base: float, span: float, progress: float, trend: int, toward: int) -> float:
    """``base + span * progress`` with the recent-trend adjustment.

    ``trend`` is the last-closes direction (+1/-1/0); ``toward`` is the
    direction that confirms the formation.
    """
    progress = clamp01(progress)
    if trend and toward:
        progress += TREND_BONUS if trend == toward else -TREND_PENALTY
    return clamp01(base + span * clamp01(progress))


def neckline_progress(extreme: float, neckline: float, price: float) -> float:
    """How far price has travelled from the last extreme toward the neckline."""
    height = extreme - neckline
    if height == 0:
        return 0.0
    return clamp01((extreme - price) / height)
