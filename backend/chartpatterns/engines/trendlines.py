"""
Chart Patterns — Trendline Fitter

Least-squares lines through pivot subsets plus the small geometric helpers
every classifier shares (tolerance tests, horizontalization, apex).
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from chartpatterns.models import Pivot, TrendLine


# ──────────────────────────────────────────────
# Scalar Helpers
# ──────────────────────────────────────────────

def clamp01(x: float) -> float:
    if not math.isfinite(x):
        return 0.0
    return min(1.0, max(0.0, x))


def near(a: float, b: float, tol: float) -> bool:
    """|a - b| within ``tol`` of the larger value."""
    return abs(a - b) <= max(a, b) * tol


def pct_change(a: float, b: float) -> float:
    return (b - a) / (a or 1.0)


def rel_dev(a: float, b: float) -> float:
    return abs(a - b) / max(1.0, max(a, b))


def margin_from_rel_dev(rd: float, tol: float) -> float:
    """1 when the deviation is zero, 0 at the tolerance edge."""
    return clamp01(1.0 - rd / max(1e-12, tol))


# ──────────────────────────────────────────────
# Regression
# ──────────────────────────────────────────────

def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float, float]:
    """OLS slope, intercept and R² over finite points.

    R² is ``1 - SSres/SStot``; a constant series (SStot ≤ 0) scores 1.0 when
    the line passes through every point and 0.0 otherwise.
    """
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    mask = np.isfinite(x) & np.isfinite(y)
    x, y = x[mask], y[mask]
    if len(x) == 0:
        return 0.0, 0.0, 0.0
    if len(x) == 1:
        return 0.0, float(y[0]), 0.0

    x_mean, y_mean = x.mean(), y.mean()
    denom = float(((x - x_mean) ** 2).sum()) or 1.0
    slope = float(((x - x_mean) * (y - y_mean)).sum()) / denom
    intercept = float(y_mean - slope * x_mean)

    pred = slope * x + intercept
    ss_res = float(((y - pred) ** 2).sum())
    ss_tot = float(((y - y_mean) ** 2).sum())
    if ss_tot <= 0:
        r2 = 1.0 if ss_res <= 1e-12 else 0.0
    else:
        r2 = clamp01(1.0 - ss_res / ss_tot)
    return slope, intercept, r2


def trendline_fit(points: Sequence[Pivot], slope: float, intercept: float) -> float:
    """1 minus the mean relative deviation of the points from the line."""
    devs = [
        abs(p.price - (slope * p.index + intercept)) / max(1e-9, abs(p.price))
        for p in points if math.isfinite(p.price)
    ]
    if not devs:
        return 0.0
    return clamp01(1.0 - sum(devs) / len(devs))


def fit_trendline(points: Sequence[Pivot], min_r2: float = 0.20) -> Optional[TrendLine]:
    """Regression line through pivots, or None below the R² threshold."""
    finite = [p for p in points if math.isfinite(p.price)]
    if len(finite) < 2:
        return None
    slope, intercept, r2 = linear_regression(
        [p.index for p in finite], [p.price for p in finite],
    )
    if r2 < min_r2:
        return None
    return TrendLine(
        slope=slope,
        intercept=intercept,
        r_squared=r2,
        touch_indices=[p.index for p in finite],
        start_index=finite[0].index,
        end_index=finite[-1].index,
    )


def fit_series(xs: Sequence[int], ys: Sequence[float]) -> TrendLine:
    """Unfiltered regression over raw bar values."""
    slope, intercept, r2 = linear_regression(xs, ys)
    return TrendLine(
        slope=slope, intercept=intercept, r_squared=r2,
        start_index=int(xs[0]) if len(xs) else 0,
        end_index=int(xs[-1]) if len(xs) else 0,
    )


# ──────────────────────────────────────────────
# Construction Helpers
# ──────────────────────────────────────────────

def horizontal_line(price: float, start_index: int, end_index: int, touches: Sequence[int] = ()) -> TrendLine:
    return TrendLine(
        slope=0.0, intercept=price, r_squared=1.0,
        touch_indices=list(touches), start_index=start_index, end_index=end_index,
    )


def line_through(a: Pivot, b: Pivot) -> TrendLine:
    """Two-point line between pivots."""
    run = b.index - a.index
    slope = (b.price - a.price) / run if run else 0.0
    return TrendLine(
        slope=slope,
        intercept=a.price - slope * a.index,
        r_squared=1.0,
        touch_indices=[a.index, b.index],
        start_index=a.index,
        end_index=b.index,
    )


def horizontalize(a: Pivot, b: Pivot, tolerance: float) -> tuple[TrendLine, bool]:
    """Line through two pivots, flattened to their average when too steep.

    Returns the line and whether it was flattened.
    """
    if rel_dev(a.price, b.price) > tolerance:
        avg = (a.price + b.price) / 2.0
        return horizontal_line(avg, a.index, b.index, (a.index, b.index)), True
    return line_through(a, b), False


def intersection_x(a: TrendLine, b: TrendLine) -> Optional[float]:
    """Bar index where two lines meet; None for parallel lines."""
    ds = a.slope - b.slope
    if abs(ds) < 1e-12:
        return None
    return (b.intercept - a.intercept) / ds


def touch_indices(
    values: np.ndarray,
    line: TrendLine,
    start: int,
    end: int,
    pct: float,
) -> list[int]:
    """Bars in [start, end] whose value sits within ``pct`` of the line."""
    touches = []
    for i in range(start, end + 1):
        v = values[i]
        if not math.isfinite(v):
            continue
        ref = line.value_at(i)
        if abs(v - ref) <= abs(ref) * pct:
            touches.append(i)
    return touches
