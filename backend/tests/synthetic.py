"""
Synthetic candle series shared by the test suites.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from chartpatterns.models import Candle


def make_candles(closes: list[float], wick: float = 0.2, start: datetime = datetime(2024, 1, 1)) -> list[Candle]:
    """Candles whose high/low sit ``wick`` above/below the close, one per day."""
    return [
        Candle(
            open=c,
            high=c + wick,
            low=c - wick,
            close=c,
            volume=1_000_000,
            timestamp=start + timedelta(days=i),
        )
        for i, c in enumerate(closes)
    ]


def interpolate(knots: list[tuple[int, float]]) -> list[float]:
    """Piecewise-linear closes through (index, price) knots; knots are exact."""
    closes: list[float] = []
    for (i0, p0), (i1, p1) in zip(knots, knots[1:]):
        span = i1 - i0
        for k in range(span):
            closes.append(p0 + (p1 - p0) * k / span)
    closes.append(knots[-1][1])
    return closes


def zigzag(upper, lower, n: int, period: int = 6) -> list[float]:
    """Closes bouncing between two boundary functions.

    Bars with ``i % period == 0`` sit on ``lower``; ``i % period == period // 2``
    sit on ``upper``.
    """
    half = period // 2
    closes = []
    for i in range(n):
        p = i % period
        f = p / half if p <= half else (period - p) / half
        closes.append(lower(i) + f * (upper(i) - lower(i)))
    return closes


# ──────────────────────────────────────────────
# Canonical Series
# ──────────────────────────────────────────────

DOUBLE_TOP_KNOTS = [(0, 95.0), (5, 100.0), (12, 90.0), (20, 100.0), (29, 95.5)]


def double_top_closes() -> list[float]:
    """Peaks of 100 at bars 5 and 20, trough of 90 at bar 12, no breakout."""
    return interpolate(DOUBLE_TOP_KNOTS)


def double_top_breakout_closes() -> list[float]:
    """Double top followed by five closes 5% below the neckline."""
    return double_top_closes() + [85.5] * 5


def double_top_target_closes() -> list[float]:
    """Double top that breaks the neckline and reaches the measured move."""
    tail = [87.5, 86.0, 84.5, 83.0, 81.5, 80.0, 79.0, 78.5] + [78.0] * 7
    return double_top_closes() + tail


def symmetrical_triangle_closes() -> list[float]:
    """Highs falling 110→100 and lows rising 90→95 across 30 bars."""
    return zigzag(
        lambda i: 110.0 - 10.0 * i / 29,
        lambda i: 90.0 + 5.0 * i / 29,
        30,
    )


def rising_wedge_closes() -> list[float]:
    """Both boundaries rising, the lower one steeper, over 60 bars."""
    return zigzag(
        lambda i: 100.0 + 10.0 * i / 59,
        lambda i: 90.0 + 16.0 * i / 59,
        60,
    )


def falling_wedge_closes() -> list[float]:
    """Rising wedge mirrored: both boundaries falling, the upper one steeper."""
    return [200.0 - c for c in rising_wedge_closes()]


def ascending_triangle_closes() -> list[float]:
    """Flat resistance at 110 over lows rising 90→100 across 30 bars."""
    return zigzag(lambda i: 110.0, lambda i: 90.0 + 10.0 * i / 29, 30)


def descending_triangle_closes() -> list[float]:
    """Ascending triangle mirrored: flat support at 90 under falling highs."""
    return [200.0 - c for c in ascending_triangle_closes()]


def head_and_shoulders_closes() -> list[float]:
    """Shoulders 100 at bars 8/38, head 110 at 22, neckline 92, then a breakdown."""
    return interpolate([
        (0, 92.0), (8, 100.0), (14, 92.0), (22, 110.0),
        (30, 92.0), (38, 100.0), (46, 85.0),
    ])


def bull_flag_closes() -> list[float]:
    """Flat base, a 15% pole over 12 bars, then a gently falling channel."""
    base = [100.0] * 10
    pole = [100.0 + 15.0 * k / 12 for k in range(13)]
    channel = [114.5 - 0.3 * k + (0.5 if k % 2 == 0 else -0.5) for k in range(10)]
    return base + pole + channel


def pennant_closes() -> list[float]:
    """Flat base, a 15% pole, then swings narrowing around 114."""
    base = [100.0] * 10
    pole = [100.0 + 15.0 * k / 12 for k in range(13)]
    swings = [114.0 + (1.6 - 0.15 * k) * (1 if k % 2 == 0 else -1) for k in range(10)]
    return base + pole + swings


def forming_double_top_closes() -> list[float]:
    """First peak at bar 10, valley at 18, price climbing back toward the peak."""
    return interpolate([(0, 90.0), (10, 100.0), (18, 92.0), (26, 99.0)])


def forming_head_and_shoulders_closes() -> list[float]:
    """Left shoulder and head confirmed, right shoulder still building."""
    return interpolate([
        (0, 90.0), (8, 100.0), (14, 92.0), (22, 108.0), (30, 93.0), (37, 99.0),
    ])
