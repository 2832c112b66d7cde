"""
Chart Patterns — Continuation Classifiers

Boundary-line formations:
  - Triangles (ascending / descending / symmetrical) over sliding pivot windows
  - Rising / falling wedges over a sliding bar-window scan
  - Pennants and flags after a strong pole move

Triangles need opposite (or one flat) boundary slopes; wedges need both
boundaries sloping the same way, so the two families never claim the same
window.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np
import structlog

from chartpatterns.engines.pattern_scoring import (
    ScanContext,
    blend_confidence,
    completion_from_progress,
    direction_for,
    duration_score,
    finalize_confidence,
)
from chartpatterns.engines.pivots import peaks, valleys
from chartpatterns.engines.trendlines import (
    clamp01,
    fit_series,
    fit_trendline,
    horizontal_line,
    intersection_x,
    pct_change,
    touch_indices,
    trendline_fit,
)
from chartpatterns.models import (
    TRIANGLE_TYPES,
    WEDGE_TYPES,
    Direction,
    KeyPivot,
    PatternType,
    PivotKind,
    PoleContinuationPattern,
    TrendLine,
    TrianglePattern,
    WedgePattern,
)

log = structlog.get_logger(__name__)

MIN_WEDGE_PIVOTS = 3

WEDGE_WEIGHTS = {
    "convergence": 0.20,
    "fit": 0.20,
    "touches": 0.20,
    "inside": 0.10,
    "duration": 0.10,
    "apex": 0.10,
    "recency": 0.10,
}


def _swing_points(xs: np.ndarray, values: np.ndarray, sign: float) -> tuple[np.ndarray, np.ndarray]:
    """Interior local extremes (sign=+1 maxima, -1 minima) of a finite series.

    Falls back to every bar when fewer than two extremes exist.
    """
    idx = [
        i for i in range(1, len(values) - 1)
        if sign * (values[i] - values[i - 1]) >= 0 and sign * (values[i] - values[i + 1]) >= 0
    ]
    if len(idx) < 2:
        return xs, values
    return xs[idx], values[idx]


def _converging_completion(upper: TrendLine, lower: TrendLine, start_gap: float, at: int) -> float:
    """Fraction of the opening spread already consumed at bar ``at``."""
    if start_gap <= 0:
        return 0.0
    gap_now = upper.value_at(at) - lower.value_at(at)
    if gap_now <= 0:
        return 1.0
    return clamp01(1.0 - gap_now / start_gap)


class ContinuationPatternClassifier:
    """Triangle, wedge and pole-continuation detection."""

    def detect(self, ctx: ScanContext) -> list:
        cfg = ctx.config
        found: list = []
        if any(cfg.allows(t) for t in TRIANGLE_TYPES):
            found.extend(self._detect_triangles(ctx))
        if any(cfg.allows(t) for t in WEDGE_TYPES):
            found.extend(self._detect_wedges(ctx))
        if cfg.allows(PatternType.PENNANT) or cfg.allows(PatternType.FLAG):
            found.extend(self._detect_pole_patterns(ctx))
        return found

    # ──────────────────────────────────────────────
    # Triangles
    # ──────────────────────────────────────────────

    def _detect_triangles(self, ctx: ScanContext) -> list[TrianglePattern]:
        cfg = ctx.config
        piv = ctx.pivots
        span = max(4, cfg.triangle_window * 2)
        step = max(1, cfg.triangle_window // 4)
        last_offset = max(0, len(piv) - span)
        offsets = list(range(0, last_offset + 1, step))
        if offsets[-1] != last_offset:
            offsets.append(last_offset)

        results = []
        for off in offsets:
            window = piv[off:off + span]
            candidate = self._classify_triangle(ctx, peaks(window), valleys(window))
            if candidate is not None:
                results.append(candidate)
        return results

    def _classify_triangle(self, ctx: ScanContext, hs: list, ls: list) -> Optional[TrianglePattern]:
        cfg = ctx.config
        if len(hs) < 2 or len(ls) < 2 or len(hs) + len(ls) < 5:
            return None
        start = min(hs[0].index, ls[0].index)
        end = max(hs[-1].index, ls[-1].index)

        tol = cfg.tolerance_pct
        flat_th = tol * cfg.triangle_flat_coef
        move_th = tol * cfg.triangle_move_coef
        d_high = pct_change(hs[0].price, hs[-1].price)
        d_low = pct_change(ls[0].price, ls[-1].price)

        hi_flat, lo_flat = abs(d_high) <= flat_th, abs(d_low) <= flat_th
        hi_fall, hi_rise = d_high <= -move_th, d_high >= move_th
        lo_fall, lo_rise = d_low <= -move_th, d_low >= move_th

        if hi_flat and lo_rise:
            ptype = PatternType.TRIANGLE_ASCENDING
        elif lo_flat and hi_fall:
            ptype = PatternType.TRIANGLE_DESCENDING
        elif hi_fall and lo_rise:
            ptype = PatternType.TRIANGLE_SYMMETRICAL
        else:
            if (hi_rise and lo_rise) or (hi_fall and lo_fall):
                ctx.diagnostics.reject("triangle", "same_direction_slopes", start, end)
            else:
                ctx.diagnostics.reject("triangle", "no_triangle_shape", start, end)
            return None
        if not cfg.allows(ptype):
            return None

        spread_start = hs[0].price - ls[0].price
        spread_end = hs[-1].price - ls[-1].price
        if spread_start <= 0 or spread_end >= spread_start * (1 - tol * cfg.convergence_factor):
            ctx.diagnostics.reject(ptype, "not_converging", start, end)
            return None

        upper, upper_fit = self._boundary(hs, hi_flat, start, end, cfg.min_r2)
        lower, lower_fit = self._boundary(ls, lo_flat, start, end, cfg.min_r2)
        if upper is None or lower is None:
            ctx.diagnostics.reject(ptype, "poor_line_fit", start, end)
            return None
        if min(upper_fit, lower_fit) < cfg.min_line_fit:
            ctx.diagnostics.reject(ptype, "line_fit_below_min", start, end)
            return None
        if upper.value_at(end) <= lower.value_at(end):
            ctx.diagnostics.reject(ptype, "boundaries_crossed", start, end)
            return None

        apex = intersection_x(upper, lower)
        if apex is not None and apex <= start:
            apex = None
        balance = min(len(hs), len(ls)) / max(len(hs), len(ls))
        confidence = finalize_confidence(
            blend_confidence((upper_fit + lower_fit) / 2.0, balance, duration_score(ctx.candles, start, end)),
            ptype,
        )

        toward = {
            PatternType.TRIANGLE_ASCENDING: 1,
            PatternType.TRIANGLE_DESCENDING: -1,
        }.get(ptype, 0)
        progress = _converging_completion(upper, lower, spread_start, ctx.last_index)
        completion = completion_from_progress(0.4, 0.6, progress, ctx.trend(), toward)

        if ptype == PatternType.TRIANGLE_ASCENDING:
            target = upper.value_at(end) + spread_start
            invalidation = ls[-1].price
        elif ptype == PatternType.TRIANGLE_DESCENDING:
            target = lower.value_at(end) - spread_start
            invalidation = hs[-1].price
        else:
            target, invalidation = None, None

        key = [ctx.key_pivot(f"high{i + 1}", p) for i, p in enumerate(hs)]
        key += [ctx.key_pivot(f"low{i + 1}", p) for i, p in enumerate(ls)]
        key.sort(key=lambda k: k.index)
        ctx.diagnostics.accept(ptype, start, end)
        return TrianglePattern(
            type=ptype,
            direction=direction_for(ptype),
            mode=cfg.mode,
            completion=completion,
            confidence=confidence,
            range=ctx.make_range(start, end),
            key_pivots=key,
            upper_line=upper,
            lower_line=lower,
            apex_index=apex,
            breakout_target=target,
            invalidation_price=invalidation,
            pattern_height=spread_start,
        )

    @staticmethod
    def _boundary(points: list, flat: bool, start: int, end: int, min_r2: float) -> tuple[Optional[TrendLine], float]:
        """Flat sides become horizontal at the mean pivot price; sloped sides are fitted."""
        if flat:
            mean = float(np.mean([p.price for p in points]))
            return (
                horizontal_line(mean, start, end, [p.index for p in points]),
                trendline_fit(points, 0.0, mean),
            )
        line = fit_trendline(points, min_r2)
        if line is None:
            return None, 0.0
        return line, min(line.r_squared, trendline_fit(points, line.slope, line.intercept))

    # ──────────────────────────────────────────────
    # Wedges
    # ──────────────────────────────────────────────

    def _detect_wedges(self, ctx: ScanContext) -> list[WedgePattern]:
        cfg = ctx.config
        n = len(ctx.candles)
        results = []
        upper_size = min(cfg.wedge_max_window, n)
        for size in range(cfg.wedge_min_window, upper_size + 1, cfg.wedge_window_step):
            starts = list(range(0, n - size + 1, cfg.wedge_window_step))
            if not starts:
                continue
            if starts[-1] != n - size:
                starts.append(n - size)
            for start in starts:
                candidate = self._evaluate_wedge_window(ctx, start, start + size - 1)
                if candidate is not None:
                    results.append(candidate)
        if results:
            log.debug("wedges.scan_complete", windows_matched=len(results))
        return results

    def _evaluate_wedge_window(self, ctx: ScanContext, start: int, end: int) -> Optional[WedgePattern]:
        cfg = ctx.config
        inside_pivots = [p for p in ctx.pivots if start <= p.index <= end]
        hs, ls = peaks(inside_pivots), valleys(inside_pivots)
        if len(hs) < MIN_WEDGE_PIVOTS or len(ls) < MIN_WEDGE_PIVOTS:
            return None

        upper = fit_trendline(hs, cfg.wedge_min_r2)
        lower = fit_trendline(ls, cfg.wedge_min_r2)
        if upper is None or lower is None:
            ctx.diagnostics.reject("wedge", "poor_line_fit", start, end)
            return None

        size = end - start + 1
        hi_seg, lo_seg = ctx.highs[start:end + 1], ctx.lows[start:end + 1]
        finite_hi, finite_lo = hi_seg[np.isfinite(hi_seg)], lo_seg[np.isfinite(lo_seg)]
        if len(finite_hi) == 0 or len(finite_lo) == 0:
            return None
        min_slope = (float(finite_hi.max()) - float(finite_lo.min())) * 0.01 / size

        su, sl = upper.slope, lower.slope
        if su * sl <= 0 or min(abs(su), abs(sl)) < min_slope:
            return None
        if su > 0:
            ptype, ratio = PatternType.RISING_WEDGE, sl / su
        else:
            ptype, ratio = PatternType.FALLING_WEDGE, su / sl
        if not cfg.allows(ptype):
            return None
        if not cfg.wedge_slope_ratio_min <= ratio <= cfg.wedge_slope_ratio_max:
            ctx.diagnostics.reject(ptype, "slope_ratio_out_of_range", start, end)
            return None

        mid = (start + end) / 2.0
        g0 = upper.value_at(start) - lower.value_at(start)
        gm = upper.value_at(mid) - lower.value_at(mid)
        g1 = upper.value_at(end) - lower.value_at(end)
        if not (g0 > gm > g1 > 0):
            ctx.diagnostics.reject(ptype, "gap_not_shrinking", start, end)
            return None
        gap_ratio = g1 / g0
        if gap_ratio >= cfg.wedge_max_gap_ratio:
            ctx.diagnostics.reject(ptype, "insufficient_convergence", start, end)
            return None

        up_touch = touch_indices(ctx.highs, upper, start, end, cfg.wedge_touch_pct)
        lo_touch = touch_indices(ctx.lows, lower, start, end, cfg.wedge_touch_pct)
        if len(up_touch) < 2 or len(lo_touch) < 2:
            ctx.diagnostics.reject(ptype, "insufficient_touches", start, end)
            return None
        if max(np.diff(up_touch).max(), np.diff(lo_touch).max()) > cfg.wedge_max_touch_gap:
            ctx.diagnostics.reject(ptype, "touch_gap_too_wide", start, end)
            return None
        if abs(up_touch[0] - lo_touch[0]) > cfg.wedge_first_touch_max_offset:
            ctx.diagnostics.reject(ptype, "first_touches_apart", start, end)
            return None

        pad = cfg.wedge_touch_pct
        inside = 0
        for i in range(start, end + 1):
            h, l = ctx.highs[i], ctx.lows[i]
            if not (math.isfinite(h) and math.isfinite(l)):
                continue
            if h <= upper.value_at(i) * (1 + pad) and l >= lower.value_at(i) * (1 - pad):
                inside += 1

        apex = intersection_x(upper, lower)
        span_range = max(1, cfg.wedge_max_window - cfg.wedge_min_window)
        components = {
            "convergence": clamp01((1.0 - gap_ratio) / 0.6),
            "fit": (upper.r_squared + lower.r_squared) / 2.0,
            "touches": clamp01((len(up_touch) + len(lo_touch)) / 8.0),
            "inside": inside / size,
            "duration": 0.5 + 0.5 * clamp01((size - cfg.wedge_min_window) / span_range),
            "apex": clamp01(1.0 - (apex - end) / (2.0 * size)) if apex is not None and apex > end else 0.0,
            "recency": clamp01(1.0 - (ctx.last_index - end) / max(1, len(ctx.candles))),
        }
        score = sum(WEDGE_WEIGHTS[k] * v for k, v in components.items())
        if score < cfg.wedge_min_score:
            ctx.diagnostics.reject(ptype, "score_below_min", start, end)
            return None

        upper = upper.model_copy(update={"touch_indices": up_touch, "start_index": start, "end_index": end})
        lower = lower.model_copy(update={"touch_indices": lo_touch, "start_index": start, "end_index": end})
        rising = ptype == PatternType.RISING_WEDGE
        progress = _converging_completion(upper, lower, g0, ctx.last_index)
        completion = completion_from_progress(0.4, 0.6, progress, ctx.trend(), -1 if rising else 1)

        key = [ctx.key_pivot(f"high{i + 1}", p) for i, p in enumerate(hs)]
        key += [ctx.key_pivot(f"low{i + 1}", p) for i, p in enumerate(ls)]
        key.sort(key=lambda k: k.index)
        ctx.diagnostics.accept(ptype, start, end)
        return WedgePattern(
            type=ptype,
            direction=direction_for(ptype),
            mode=cfg.mode,
            completion=completion,
            confidence=round(clamp01(score), 2),
            range=ctx.make_range(start, end),
            key_pivots=key,
            upper_line=upper,
            lower_line=lower,
            apex_index=apex,
            slope_ratio=round(ratio, 4),
            score=round(score, 4),
            score_components={k: round(v, 4) for k, v in components.items()},
            breakout_target=lower.value_at(end) - g0 if rising else upper.value_at(end) + g0,
            pattern_height=g0,
        )

    # ──────────────────────────────────────────────
    # Pennants and Flags
    # ──────────────────────────────────────────────

    def _detect_pole_patterns(self, ctx: ScanContext) -> list[PoleContinuationPattern]:
        cfg = ctx.config
        n = len(ctx.candles)
        first_end = cfg.pole_lookback + cfg.consolidation_bars - 1
        if n <= first_end:
            return []
        step = max(1, cfg.consolidation_bars // 2)
        ends = list(range(first_end, n, step))
        if ends[-1] != n - 1:
            ends.append(n - 1)

        results = []
        for cons_end in ends:
            candidate = self._evaluate_pole_window(ctx, cons_end)
            if candidate is not None:
                results.append(candidate)
        return results

    def _evaluate_pole_window(self, ctx: ScanContext, cons_end: int) -> Optional[PoleContinuationPattern]:
        cfg = ctx.config
        cons_start = cons_end - cfg.consolidation_bars + 1
        pole_start = cons_start - cfg.pole_lookback
        if pole_start < 0:
            return None

        pole_from, pole_to = float(ctx.closes[pole_start]), float(ctx.closes[cons_start])
        if not (math.isfinite(pole_from) and math.isfinite(pole_to)):
            return None
        change = pct_change(pole_from, pole_to)
        if abs(change) < cfg.pole_min_pct:
            return None
        up = change > 0
        pole_height = abs(pole_to - pole_from)

        xs = np.arange(cons_start, cons_end + 1)
        hi, lo = ctx.highs[cons_start:cons_end + 1], ctx.lows[cons_start:cons_end + 1]
        mask = np.isfinite(hi) & np.isfinite(lo)
        if mask.sum() < 3:
            return None
        # boundaries follow the swing extremes, not every bar
        upper = fit_series(*_swing_points(xs[mask], hi[mask], 1.0))
        lower = fit_series(*_swing_points(xs[mask], lo[mask], -1.0))
        spread_start = upper.value_at(cons_start) - lower.value_at(cons_start)
        spread_end = upper.value_at(cons_end) - lower.value_at(cons_end)
        if spread_start <= 0 or spread_end <= 0:
            return None
        depth = float(hi[mask].max() - lo[mask].min())
        if depth > 0.5 * pole_height:
            ctx.diagnostics.reject("pole", "consolidation_too_deep", pole_start, cons_end)
            return None

        converging = spread_end < spread_start * (1 - cfg.tolerance_pct * cfg.convergence_factor)
        if upper.slope <= 0 <= lower.slope and converging:
            ptype = PatternType.PENNANT
        elif (upper.slope < 0 and lower.slope < 0) if up else (upper.slope > 0 and lower.slope > 0):
            if not 0.5 * spread_start <= spread_end <= spread_start * 1.02:
                ctx.diagnostics.reject(PatternType.FLAG, "channel_not_parallel", pole_start, cons_end)
                return None
            ptype = PatternType.FLAG
        else:
            ctx.diagnostics.reject("pole", "no_consolidation_shape", pole_start, cons_end)
            return None
        if not cfg.allows(ptype):
            return None

        fit = (upper.r_squared + lower.r_squared) / 2.0
        margin = clamp01(abs(change) / (2.0 * cfg.pole_min_pct))
        confidence = finalize_confidence(
            blend_confidence(margin, max(fit, 0.5), duration_score(ctx.candles, pole_start, cons_end)),
            ptype,
        )

        last = ctx.last_index
        width = upper.value_at(last) - lower.value_at(last)
        if width > 0:
            position = (ctx.last_close - lower.value_at(last)) / width
            progress = position if up else 1.0 - position
        else:
            progress = 1.0
        completion = completion_from_progress(0.5, 0.5, progress, ctx.trend(), 1 if up else -1)

        apex = intersection_x(upper, lower) if ptype == PatternType.PENNANT else None
        if apex is not None and apex <= cons_start:
            apex = None
        pole_kind_start = PivotKind.LOW if up else PivotKind.HIGH
        pole_kind_end = PivotKind.HIGH if up else PivotKind.LOW
        ctx.diagnostics.accept(ptype, pole_start, cons_end)
        return PoleContinuationPattern(
            type=ptype,
            direction=Direction.BULLISH if up else Direction.BEARISH,
            mode=cfg.mode,
            completion=completion,
            confidence=confidence,
            range=ctx.make_range(pole_start, cons_end),
            key_pivots=[
                KeyPivot(role="pole_start", index=pole_start, price=pole_from, kind=pole_kind_start),
                KeyPivot(role="pole_end", index=cons_start, price=pole_to, kind=pole_kind_end),
            ],
            upper_line=upper,
            lower_line=lower,
            pole_start_index=pole_start,
            pole_change_pct=round(change * 100.0, 2),
            apex_index=apex,
            breakout_target=(upper.value_at(cons_end) + pole_height) if up else (lower.value_at(cons_end) - pole_height),
            invalidation_price=float(lo[mask].min()) if up else float(hi[mask].max()),
            pattern_height=pole_height,
        )
