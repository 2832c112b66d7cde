"""
Chart Patterns — Breakout Engine

Attaches a lifecycle status to each raw candidate by scanning the bars after
its anchor for a confirmed close beyond the formation boundary.

Buffers:
  - Neckline and line-boundary families (necklines, triangles, pennants,
    flags): fixed percentage of the boundary price.
  - Wedges: ATR-scaled. The first close past the outer ATR buffer is the
    breakout. Closes beyond the line but inside the outer buffer open a
    tentative sequence, which resets when price closes back inside by the
    inner ATR buffer; the confirmed breakout records where its sequence began.

Only bars up to the supplied last index are ever read.
"""

from __future__ import annotations

import math
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from chartpatterns.config import DetectionConfig
from chartpatterns.engines.trendlines import clamp01
from chartpatterns.models import (
    BreakoutInfo,
    Candle,
    Direction,
    NecklinePattern,
    PatternStatus,
    WedgePattern,
)

log = structlog.get_logger(__name__)


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert candles to a DataFrame indexed by bar position."""
    return pd.DataFrame({
        "open": [c.open for c in candles],
        "high": [c.high for c in candles],
        "low": [c.low for c in candles],
        "close": [c.close for c in candles],
    })


def average_true_range(candles: Sequence[Candle], end: int, period: int = 14) -> float:
    """Mean true range of the ``period`` bars ending at ``end`` (inclusive)."""
    df = candles_to_dataframe(candles[max(0, end - period):end + 1])
    if df.empty:
        return 0.0
    highs, lows, closes = df["high"], df["low"], df["close"]
    tr = pd.concat([
        highs - lows,
        (highs - closes.shift(1)).abs(),
        (lows - closes.shift(1)).abs(),
    ], axis=1).max(axis=1)
    atr = tr.tail(period).mean()
    return float(atr) if math.isfinite(atr) else 0.0


class BreakoutEngine:
    """Breakout / invalidation evaluation and status assignment."""

    def evaluate(self, candidate, candles: Sequence[Candle], config: DetectionConfig):
        """Return a copy of ``candidate`` with ``breakout``, ``status`` and completion set."""
        last = len(candles) - 1
        closes = np.array([c.close for c in candles], dtype=float)
        anchor = min(candidate.range.end_index, last)

        if isinstance(candidate, WedgePattern):
            info = self._scan_wedge(candidate, candles, closes, anchor, config)
        else:
            info = self._scan_fixed(candidate, closes, anchor, config)

        expected = self._expected_direction(candidate)
        if info.breakout_index is not None and expected and info.direction != expected:
            info.invalidated = True
            info.invalidation_index = info.breakout_index
            info.reason = "wrong_direction_break"

        pre_break = self._invalidation_before(candidate, closes, info.breakout_index, last)
        if pre_break is not None and not info.invalidated:
            info.invalidated = True
            info.invalidation_index = pre_break
            info.reason = "invalidation_price_exceeded"
            info.completed = False

        if info.breakout_index is not None and not info.invalidated:
            info.completed = True
            info.bars_since_break = last - info.breakout_index
            recross = self._recross(candidate, closes, info)
            if recross is not None:
                info.invalidated = True
                info.invalidation_index = recross
                info.reason = "false_breakout"

        if info.invalidated:
            log.debug(
                "breakout.invalidated",
                pattern=candidate.type.value,
                index=info.invalidation_index,
                reason=info.reason,
            )

        update = {"breakout": info}
        update.update(self._status(candidate, info, last, config))
        if info.completed and candidate.breakout_target is None and info.direction:
            height = candidate.pattern_height
            boundary = info.boundary_price or 0.0
            update["breakout_target"] = boundary + height if info.direction == "up" else boundary - height
        return candidate.model_copy(update=update)

    # ──────────────────────────────────────────────
    # Boundaries
    # ──────────────────────────────────────────────

    @staticmethod
    def _expected_direction(candidate) -> Optional[str]:
        if candidate.direction == Direction.BULLISH:
            return "up"
        if candidate.direction == Direction.BEARISH:
            return "down"
        return None

    @staticmethod
    def _boundaries(candidate) -> tuple[Callable[[int], float], Callable[[int], float]]:
        """(upper, lower) boundary functions of the bar index."""
        if isinstance(candidate, NecklinePattern):
            line = candidate.neckline
            return line.value_at, line.value_at
        return candidate.upper_line.value_at, candidate.lower_line.value_at

    def _scan_fixed(self, candidate, closes: np.ndarray, anchor: int, config: DetectionConfig) -> BreakoutInfo:
        pct = config.neckline_breakout_pct
        upper, lower = self._boundaries(candidate)
        info = BreakoutInfo(buffer=pct)
        expected = self._expected_direction(candidate)
        neckline = isinstance(candidate, NecklinePattern)

        for i in range(anchor + 1, len(closes)):
            c = closes[i]
            if not math.isfinite(c):
                continue
            u, l = upper(i), lower(i)
            # a neckline is a single boundary; only the expected side can break it
            if c > u * (1 + pct) and not (neckline and expected == "down"):
                info.breakout_index, info.direction, info.boundary_price = i, "up", u
                return info
            if c < l * (1 - pct) and not (neckline and expected == "up"):
                info.breakout_index, info.direction, info.boundary_price = i, "down", l
                return info
        return info

    def _scan_wedge(self, candidate: WedgePattern, candles, closes: np.ndarray, anchor: int, config: DetectionConfig) -> BreakoutInfo:
        atr = average_true_range(candles, anchor, config.atr_period)
        outer = atr * config.wedge_breakout_atr
        inner = atr * config.wedge_reset_atr
        upper, lower = candidate.upper_line.value_at, candidate.lower_line.value_at
        info = BreakoutInfo(buffer=outer)

        side: Optional[str] = None
        seq_start: Optional[int] = None
        for i in range(anchor + 1, len(closes)):
            c = closes[i]
            if not math.isfinite(c):
                continue
            u, l = upper(i), lower(i)
            if c > u:
                if side != "up":
                    side, seq_start = "up", i
                if c > u + outer:
                    info.breakout_index, info.direction, info.boundary_price = i, "up", u
                    info.sequence_start_index = seq_start
                    return info
            elif c < l:
                if side != "down":
                    side, seq_start = "down", i
                if c < l - outer:
                    info.breakout_index, info.direction, info.boundary_price = i, "down", l
                    info.sequence_start_index = seq_start
                    return info
            elif (side == "up" and c < u - inner) or (side == "down" and c > l + inner):
                side, seq_start = None, None
        return info

    @staticmethod
    def _invalidation_before(candidate, closes: np.ndarray, breakout_index: Optional[int], last: int) -> Optional[int]:
        """First close beyond the invalidation price before any breakout."""
        level = candidate.invalidation_price
        if level is None:
            return None
        stop = breakout_index if breakout_index is not None else last + 1
        bearish = candidate.direction == Direction.BEARISH
        for i in range(candidate.last_pivot_index + 1, stop):
            c = closes[i]
            if not math.isfinite(c):
                continue
            if (bearish and c > level) or (not bearish and c < level):
                return i
        return None

    def _recross(self, candidate, closes: np.ndarray, info: BreakoutInfo) -> Optional[int]:
        """First close back through the boundary by the buffer after the breakout."""
        upper, lower = self._boundaries(candidate)
        wedge = isinstance(candidate, WedgePattern)
        for i in range(info.breakout_index + 1, len(closes)):
            c = closes[i]
            if not math.isfinite(c):
                continue
            if info.direction == "up":
                ref = upper(i)
                back = c < ref - info.buffer if wedge else c < ref * (1 - info.buffer)
            else:
                ref = lower(i)
                back = c > ref + info.buffer if wedge else c > ref * (1 + info.buffer)
            if back:
                return i
        return None

    # ──────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────

    @staticmethod
    def _status(candidate, info: BreakoutInfo, last: int, config: DetectionConfig) -> dict:
        """invalidated > completed_active > expired > near_completion > forming."""
        completion = clamp01(candidate.completion)
        if info.invalidated:
            return {"status": PatternStatus.INVALIDATED, "completion": completion}
        if info.completed:
            status = (
                PatternStatus.COMPLETED_ACTIVE
                if info.bars_since_break <= config.max_completed_bars
                else PatternStatus.EXPIRED
            )
            return {"status": status, "completion": 1.0}

        apex = getattr(candidate, "apex_index", None)
        if apex is not None and last > apex:
            info.reason = "apex_passed"
            return {"status": PatternStatus.EXPIRED, "completion": completion}
        if completion >= config.near_completion_threshold:
            return {"status": PatternStatus.NEAR_COMPLETION, "completion": completion}
        if apex is not None and apex - last <= config.near_apex_bars:
            return {"status": PatternStatus.NEAR_COMPLETION, "completion": completion}
        return {"status": PatternStatus.FORMING, "completion": completion}
