"""
Chart Patterns — Reversal Classifiers

Neckline formations built from alternating pivots:
  - Double top / double bottom
  - Head-and-shoulders / inverse head-and-shoulders
  - Triple top / triple bottom

Completed mode requires every defining pivot to exist. Forming mode adds
variants that use the latest price extreme as a provisional final pivot.
Each strict pass falls back to relaxed tolerances only when it found nothing.
"""

from __future__ import annotations

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
    neckline_progress,
)
from chartpatterns.engines.pivots import last_confirmed, peaks, valleys
from chartpatterns.engines.trendlines import (
    clamp01,
    horizontal_line,
    horizontalize,
    margin_from_rel_dev,
    near,
    rel_dev,
)
from chartpatterns.models import (
    KeyPivot,
    NecklinePattern,
    PatternType,
    Pivot,
    PivotKind,
)

log = structlog.get_logger(__name__)

DOUBLE_RELAXED = (1.5, 2.0)
HS_RELAXED = (1.6, 2.0)
TRIPLE_RELAXED = (1.25, 2.0)
RELAXED_PENALTY = 0.95
FORMING_HS_PENALTY = 0.85


class ReversalPatternClassifier:
    """Double, triple and head-and-shoulders detection over a pivot list."""

    def detect(self, ctx: ScanContext) -> list[NecklinePattern]:
        found: list[NecklinePattern] = []
        cfg = ctx.config

        for top in (True, False):
            ptype = PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM
            if cfg.allows(ptype):
                found.extend(self._with_relaxed(
                    ctx, ptype, DOUBLE_RELAXED,
                    lambda f, p, t=top: self._detect_double(ctx, t, f, p),
                ))
                if cfg.is_forming:
                    found.extend(self._detect_forming_double(ctx, top))

            ptype = PatternType.HEAD_AND_SHOULDERS if top else PatternType.INVERSE_HEAD_AND_SHOULDERS
            if cfg.allows(ptype):
                found.extend(self._with_relaxed(
                    ctx, ptype, HS_RELAXED,
                    lambda f, p, t=top: self._detect_head_and_shoulders(ctx, t, f, p),
                ))
                if cfg.is_forming:
                    found.extend(self._detect_forming_head_and_shoulders(ctx, top))

            ptype = PatternType.TRIPLE_TOP if top else PatternType.TRIPLE_BOTTOM
            if cfg.allows(ptype):
                found.extend(self._with_relaxed(
                    ctx, ptype, TRIPLE_RELAXED,
                    lambda f, p, t=top: self._detect_triple(ctx, t, f, p),
                ))

        return found

    @staticmethod
    def _with_relaxed(ctx: ScanContext, ptype: PatternType, factors, scan) -> list[NecklinePattern]:
        """Strict pass, then widened tolerances until something is found."""
        found = scan(1.0, 1.0)
        if found or not ctx.config.relaxed_passes:
            return found
        for factor in factors:
            found = scan(factor, RELAXED_PENALTY)
            if found:
                for c in found:
                    c.warnings.append(f"relaxed_tolerance_x{factor}")
                log.debug("reversal.relaxed_match", pattern=ptype.value, factor=factor, count=len(found))
                return found
        return []

    # ──────────────────────────────────────────────
    # Double Top / Bottom
    # ──────────────────────────────────────────────

    def _detect_double(self, ctx: ScanContext, top: bool, factor: float, penalty: float) -> list[NecklinePattern]:
        cfg = ctx.config
        tol = cfg.tolerance_pct * factor
        ptype = PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM
        outer = PivotKind.HIGH if top else PivotKind.LOW
        piv = ctx.pivots
        results = []

        for i in range(len(piv) - 2):
            a, b, c = piv[i], piv[i + 1], piv[i + 2]
            if a.kind != outer or b.kind == outer or c.kind != outer:
                continue
            if b.index - a.index < cfg.min_double_spacing or c.index - b.index < cfg.min_double_spacing:
                ctx.diagnostics.reject(ptype, "spacing_too_short", a.index, c.index)
                continue

            if top:
                extreme = max(a.price, c.price)
                height = extreme - b.price
                structural = b.price < min(a.price, c.price)
            else:
                extreme = min(a.price, c.price)
                height = b.price - extreme
                structural = b.price > max(a.price, c.price)
            if not structural:
                ctx.diagnostics.reject(ptype, "neckline_outside_peaks", a.index, c.index)
                continue
            if height / max(a.price, b.price, c.price) < cfg.min_pattern_height_pct:
                ctx.diagnostics.reject(ptype, "pattern_too_small", a.index, c.index)
                continue
            if not near(a.price, c.price, tol):
                ctx.diagnostics.reject(ptype, "peaks_not_equal", a.index, c.index)
                continue

            margin = margin_from_rel_dev(rel_dev(a.price, c.price), tol)
            symmetry = 1.0 - abs((b.index - a.index) - (c.index - b.index)) / max(1, c.index - a.index)
            duration = duration_score(ctx.candles, a.index, c.index)
            confidence = finalize_confidence(blend_confidence(margin, symmetry, duration), ptype, penalty)
            if confidence < cfg.min_confidence_for("double"):
                ctx.diagnostics.reject(ptype, "confidence_below_min", a.index, c.index)
                continue

            progress = neckline_progress(c.price, b.price, ctx.last_close)
            completion = completion_from_progress(0.66, 0.34, progress, ctx.trend(), -1 if top else 1)
            outer_role = "peak" if top else "valley"
            results.append(NecklinePattern(
                type=ptype,
                direction=direction_for(ptype),
                mode=cfg.mode,
                completion=completion,
                confidence=confidence,
                range=ctx.make_range(a.index, c.index),
                key_pivots=[
                    ctx.key_pivot(f"{outer_role}1", a),
                    ctx.key_pivot("neckline", b),
                    ctx.key_pivot(f"{outer_role}2", c),
                ],
                neckline=horizontal_line(b.price, a.index, c.index, [b.index]),
                breakout_target=b.price - height if top else b.price + height,
                invalidation_price=extreme * (1 + tol) if top else extreme * (1 - tol),
                pattern_height=height,
            ))
            ctx.diagnostics.accept(ptype, a.index, c.index)
        return results

    def _detect_forming_double(self, ctx: ScanContext, top: bool) -> list[NecklinePattern]:
        """Confirmed first peak and valley, price now building the second peak."""
        cfg = ctx.config
        ptype = PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM
        last = ctx.last_index
        outer = PivotKind.HIGH if top else PivotKind.LOW
        inner = PivotKind.LOW if top else PivotKind.HIGH

        mid = last_confirmed(ctx.pivots, inner, last, cfg.confirm_bars)
        if mid is None:
            return []
        left = last_confirmed(ctx.pivots, outer, last, cfg.confirm_bars, before=mid.index)
        if left is None or mid.index - left.index < cfg.min_double_spacing:
            return []
        right = self._provisional_extreme(ctx, mid.index, top)
        if right is None or right.index - mid.index < cfg.min_double_spacing:
            return []

        height = (left.price - mid.price) if top else (mid.price - left.price)
        if height <= 0 or height / max(left.price, mid.price) < cfg.min_pattern_height_pct:
            ctx.diagnostics.reject(ptype, "pattern_too_small", left.index, last)
            return []
        ratio = right.price / left.price if left.price else 0.0
        if abs(ratio - 1.0) > cfg.right_peak_tolerance_pct:
            ctx.diagnostics.reject(ptype, "right_peak_out_of_band", left.index, last)
            return []
        invalidation = left.price * (1 + cfg.forming_invalidation_pct) if top else left.price * (1 - cfg.forming_invalidation_pct)
        if (top and ctx.last_close > invalidation) or (not top and ctx.last_close < invalidation):
            ctx.diagnostics.reject(ptype, "exceeded_first_peak", left.index, last)
            return []

        progress = clamp01((right.price - mid.price) / (left.price - mid.price))
        completion = completion_from_progress(0.66, 0.34, progress, ctx.trend(), -1 if top else 1)
        symmetry = 1.0 - abs((mid.index - left.index) - (right.index - mid.index)) / max(1, right.index - left.index)
        raw = clamp01(1.0 - abs(ratio - 1.0)) * 0.6 + progress * 0.4
        confidence = finalize_confidence(
            blend_confidence(raw, symmetry, duration_score(ctx.candles, left.index, last)), ptype,
        )
        if confidence < cfg.min_confidence_for("double"):
            ctx.diagnostics.reject(ptype, "confidence_below_min", left.index, last)
            return []

        outer_role = "peak" if top else "valley"
        candidate = NecklinePattern(
            type=ptype,
            direction=direction_for(ptype),
            mode=cfg.mode,
            completion=completion,
            confidence=confidence,
            range=ctx.make_range(left.index, last),
            key_pivots=[
                ctx.key_pivot(f"{outer_role}1", left),
                ctx.key_pivot("neckline", mid),
                ctx.key_pivot(f"{outer_role}2", right, confirmed=last - right.index >= cfg.confirm_bars),
            ],
            neckline=horizontal_line(mid.price, left.index, last, [mid.index]),
            breakout_target=mid.price - height if top else mid.price + height,
            invalidation_price=invalidation,
            pattern_height=height,
            warnings=["second_peak_unconfirmed"],
        )
        ctx.diagnostics.accept(ptype, left.index, last)
        return [candidate]

    @staticmethod
    def _provisional_extreme(ctx: ScanContext, after: int, top: bool) -> Optional[Pivot]:
        """Highest (or lowest) close printed after ``after``."""
        segment = ctx.closes[after + 1:]
        if len(segment) == 0:
            return None
        masked = np.where(np.isfinite(segment), segment, -np.inf if top else np.inf)
        offset = int(np.argmax(masked) if top else np.argmin(masked))
        price = float(segment[offset])
        if not np.isfinite(price):
            return None
        return Pivot(index=after + 1 + offset, price=price, kind=PivotKind.HIGH if top else PivotKind.LOW)

    # ──────────────────────────────────────────────
    # Head and Shoulders
    # ──────────────────────────────────────────────

    def _detect_head_and_shoulders(self, ctx: ScanContext, top: bool, factor: float, penalty: float) -> list[NecklinePattern]:
        cfg = ctx.config
        tol = cfg.tolerance_pct * factor
        ptype = PatternType.HEAD_AND_SHOULDERS if top else PatternType.INVERSE_HEAD_AND_SHOULDERS
        outer = PivotKind.HIGH if top else PivotKind.LOW
        piv = ctx.pivots
        results = []

        for i in range(len(piv) - 4):
            seq = piv[i:i + 5]
            if [p.kind == outer for p in seq] != [True, False, True, False, True]:
                continue
            ls, n1, head, n2, rs = seq
            if any(seq[k + 1].index - seq[k].index < cfg.min_bars_between_swings for k in range(4)):
                ctx.diagnostics.reject(ptype, "spacing_too_short", ls.index, rs.index)
                continue
            if not near(ls.price, rs.price, tol):
                ctx.diagnostics.reject(ptype, "shoulders_not_equal", ls.index, rs.index)
                continue
            if top:
                prominent = head.price >= max(ls.price, rs.price) * (1 + cfg.head_prominence_pct)
                necks_ok = max(n1.price, n2.price) < min(ls.price, rs.price)
            else:
                prominent = head.price <= min(ls.price, rs.price) * (1 - cfg.head_prominence_pct)
                necks_ok = min(n1.price, n2.price) > max(ls.price, rs.price)
            if not prominent:
                ctx.diagnostics.reject(ptype, "head_not_prominent", ls.index, rs.index)
                continue
            if not necks_ok:
                ctx.diagnostics.reject(ptype, "neckline_outside_shoulders", ls.index, rs.index)
                continue

            neckline, flattened = horizontalize(n1, n2, cfg.neckline_slope_tolerance)
            neck_at_head = neckline.value_at(head.index)
            height = abs(head.price - neck_at_head)
            margin = margin_from_rel_dev(rel_dev(ls.price, rs.price), tol)
            symmetry = 1.0 - abs((head.index - ls.index) - (rs.index - head.index)) / max(1, rs.index - ls.index)
            duration = duration_score(ctx.candles, ls.index, rs.index)
            confidence = finalize_confidence(blend_confidence(margin, symmetry, duration), ptype, penalty)
            if confidence < cfg.min_confidence_for("head_and_shoulders"):
                ctx.diagnostics.reject(ptype, "confidence_below_min", ls.index, rs.index)
                continue

            neck_now = neckline.value_at(ctx.last_index)
            progress = neckline_progress(rs.price, neck_now, ctx.last_close)
            completion = completion_from_progress(0.75, 0.25, progress, ctx.trend(), -1 if top else 1)
            neck_at_rs = neckline.value_at(rs.index)
            candidate = NecklinePattern(
                type=ptype,
                direction=direction_for(ptype),
                mode=cfg.mode,
                completion=completion,
                confidence=confidence,
                range=ctx.make_range(ls.index, rs.index),
                key_pivots=[
                    ctx.key_pivot("left_shoulder", ls),
                    ctx.key_pivot("neckline_left", n1),
                    ctx.key_pivot("head", head),
                    ctx.key_pivot("neckline_right", n2),
                    ctx.key_pivot("right_shoulder", rs),
                ],
                neckline=neckline,
                breakout_target=neck_at_rs - height if top else neck_at_rs + height,
                invalidation_price=head.price,
                pattern_height=height,
            )
            if flattened:
                candidate.warnings.append("neckline_horizontalized")
            results.append(candidate)
            ctx.diagnostics.accept(ptype, ls.index, rs.index)
        return results

    def _detect_forming_head_and_shoulders(self, ctx: ScanContext, top: bool) -> list[NecklinePattern]:
        """Left shoulder, head and post-head pivot confirmed; right shoulder provisional."""
        cfg = ctx.config
        ptype = PatternType.HEAD_AND_SHOULDERS if top else PatternType.INVERSE_HEAD_AND_SHOULDERS
        last = ctx.last_index
        outer = PivotKind.HIGH if top else PivotKind.LOW
        inner = PivotKind.LOW if top else PivotKind.HIGH

        n2 = last_confirmed(ctx.pivots, inner, last, cfg.confirm_bars)
        if n2 is None:
            return []
        head = last_confirmed(ctx.pivots, outer, last, cfg.confirm_bars, before=n2.index)
        if head is None:
            return []
        ls = last_confirmed(ctx.pivots, outer, last, cfg.confirm_bars, before=head.index)
        if ls is None:
            return []
        between = [p for p in ctx.pivots if p.kind == inner and ls.index < p.index < head.index]
        if not between:
            return []
        n1 = min(between, key=lambda p: p.price) if top else max(between, key=lambda p: p.price)

        if top and head.price < ls.price * (1 + cfg.head_prominence_pct):
            return []
        if not top and head.price > ls.price * (1 - cfg.head_prominence_pct):
            return []

        rs = self._provisional_extreme(ctx, n2.index, top)
        if rs is None or rs.index - n2.index < cfg.min_bars_between_swings:
            return []
        inside = (n2.price < rs.price < head.price) if top else (head.price < rs.price < n2.price)
        if not inside:
            ctx.diagnostics.reject(ptype, "right_shoulder_outside_structure", ls.index, last)
            return []
        if not near(rs.price, ls.price, cfg.right_peak_tolerance_pct):
            ctx.diagnostics.reject(ptype, "right_shoulder_out_of_band", ls.index, last)
            return []
        trend = ctx.trend()
        away = 1 if top else -1
        beyond_shoulder = ctx.last_close > ls.price if top else ctx.last_close < ls.price
        if trend == away and beyond_shoulder:
            ctx.diagnostics.reject(ptype, "trending_away_from_confirmation", ls.index, last)
            return []

        neckline, flattened = horizontalize(n1, n2, cfg.neckline_slope_tolerance)
        height = abs(head.price - neckline.value_at(head.index))
        progress = clamp01((rs.price - n2.price) / (ls.price - n2.price)) if ls.price != n2.price else 0.0
        completion = completion_from_progress(0.75, 0.25, progress, trend, -away)
        margin = margin_from_rel_dev(rel_dev(ls.price, rs.price), cfg.right_peak_tolerance_pct)
        symmetry = 1.0 - abs((head.index - ls.index) - (rs.index - head.index)) / max(1, rs.index - ls.index)
        confidence = finalize_confidence(
            blend_confidence(margin, symmetry, duration_score(ctx.candles, ls.index, last)),
            ptype, FORMING_HS_PENALTY,
        )
        if confidence < cfg.min_confidence_for("head_and_shoulders"):
            ctx.diagnostics.reject(ptype, "confidence_below_min", ls.index, last)
            return []

        neck_now = neckline.value_at(last)
        pad = cfg.forming_invalidation_pct
        candidate = NecklinePattern(
            type=ptype,
            direction=direction_for(ptype),
            mode=cfg.mode,
            completion=completion,
            confidence=confidence,
            range=ctx.make_range(ls.index, last),
            key_pivots=[
                ctx.key_pivot("left_shoulder", ls),
                ctx.key_pivot("neckline_left", n1),
                ctx.key_pivot("head", head),
                ctx.key_pivot("neckline_right", n2),
                KeyPivot(role="right_shoulder", index=rs.index, price=rs.price, kind=outer,
                         confirmed=last - rs.index >= cfg.confirm_bars),
            ],
            neckline=neckline,
            breakout_target=neck_now - height if top else neck_now + height,
            invalidation_price=head.price * (1 + pad) if top else head.price * (1 - pad),
            pattern_height=height,
            warnings=["right_shoulder_unconfirmed"],
        )
        if flattened:
            candidate.warnings.append("neckline_horizontalized")
        ctx.diagnostics.accept(ptype, ls.index, last)
        return [candidate]

    # ──────────────────────────────────────────────
    # Triple Top / Bottom
    # ──────────────────────────────────────────────

    def _detect_triple(self, ctx: ScanContext, top: bool, factor: float, penalty: float) -> list[NecklinePattern]:
        cfg = ctx.config
        tol = cfg.tolerance_pct * factor
        ptype = PatternType.TRIPLE_TOP if top else PatternType.TRIPLE_BOTTOM
        same = peaks(ctx.pivots) if top else valleys(ctx.pivots)
        other = valleys(ctx.pivots) if top else peaks(ctx.pivots)
        results = []

        for i in range(len(same) - 2):
            a, b, c = same[i], same[i + 1], same[i + 2]
            if b.index - a.index < cfg.min_bars_between_swings or c.index - b.index < cfg.min_bars_between_swings:
                continue
            prices = (a.price, b.price, c.price)
            if not (near(a.price, b.price, tol) and near(b.price, c.price, tol) and near(a.price, c.price, tol)):
                ctx.diagnostics.reject(ptype, "extremes_not_equal", a.index, c.index)
                continue
            if not top and (max(prices) - min(prices)) / max(1.0, min(prices)) > cfg.triple_valley_spread_pct:
                ctx.diagnostics.reject(ptype, "valley_spread_excess", a.index, c.index)
                continue

            pick = min if top else max
            first = [p for p in other if a.index < p.index < b.index]
            second = [p for p in other if b.index < p.index < c.index]
            if not first or not second:
                ctx.diagnostics.reject(ptype, "intermediate_pivots_missing", a.index, c.index)
                continue
            v1 = pick(first, key=lambda p: p.price)
            v2 = pick(second, key=lambda p: p.price)
            slope = rel_dev(v1.price, v2.price)
            if slope > tol:
                ctx.diagnostics.reject(ptype, "intermediate_pivots_not_equal", a.index, c.index)
                continue
            if slope > cfg.neckline_slope_tolerance:
                ctx.diagnostics.reject(ptype, "neckline_slope_excess", a.index, c.index)
                continue

            neck = (v1.price + v2.price) / 2.0
            height = (max(prices) - neck) if top else (neck - min(prices))
            if height <= 0:
                ctx.diagnostics.reject(ptype, "neckline_outside_extremes", a.index, c.index)
                continue
            devs = [rel_dev(a.price, b.price), rel_dev(b.price, c.price), rel_dev(a.price, c.price)]
            margin = margin_from_rel_dev(sum(devs) / 3.0, tol)
            symmetry = clamp01(1.0 - (max(prices) - min(prices)) / max(1.0, max(prices)))
            duration = duration_score(ctx.candles, a.index, c.index)
            confidence = finalize_confidence(blend_confidence(margin, symmetry, duration), ptype, penalty)
            if confidence < cfg.min_confidence_for("triple"):
                ctx.diagnostics.reject(ptype, "confidence_below_min", a.index, c.index)
                continue

            progress = neckline_progress(c.price, neck, ctx.last_close)
            completion = completion_from_progress(0.75, 0.25, progress, ctx.trend(), -1 if top else 1)
            role = "peak" if top else "valley"
            extreme = max(prices) if top else min(prices)
            results.append(NecklinePattern(
                type=ptype,
                direction=direction_for(ptype),
                mode=cfg.mode,
                completion=completion,
                confidence=confidence,
                range=ctx.make_range(a.index, c.index),
                key_pivots=[
                    ctx.key_pivot(f"{role}1", a),
                    ctx.key_pivot("neckline_left", v1),
                    ctx.key_pivot(f"{role}2", b),
                    ctx.key_pivot("neckline_right", v2),
                    ctx.key_pivot(f"{role}3", c),
                ],
                neckline=horizontal_line(neck, a.index, c.index, [v1.index, v2.index]),
                breakout_target=neck - height if top else neck + height,
                invalidation_price=extreme * (1 + tol) if top else extreme * (1 - tol),
                pattern_height=height,
            ))
            ctx.diagnostics.accept(ptype, a.index, c.index)
        return results
