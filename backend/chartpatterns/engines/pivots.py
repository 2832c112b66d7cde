"""
Chart Patterns — Pivot Extractor

Turns a candle series into alternating swing highs/lows. A bar is a High
pivot when its ``high`` strictly exceeds the highs of the ``depth`` bars on
each side (Low symmetric on ``low``). The recorded price is the bar's
``close``; classification uses the extremes.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from chartpatterns.models import Candle, Pivot, PivotKind


def candle_arrays(candles: Sequence[Candle]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(highs, lows, closes) as float arrays."""
    h = np.array([c.high for c in candles], dtype=float)
    l = np.array([c.low for c in candles], dtype=float)
    c = np.array([c.close for c in candles], dtype=float)
    return h, l, c


def _dominates(values: np.ndarray, i: int, depth: int, sign: float, vote: Optional[float]) -> bool:
    """True when values[i] beats its neighbours (sign=+1 higher, -1 lower).

    Non-finite neighbours are left out of the comparison. With ``vote`` set,
    only that fraction of the offsets has to agree on each side.
    """
    center = values[i]
    if not math.isfinite(center):
        return False
    needed = depth if vote is None else max(1, math.ceil(depth * vote))
    left = right = 0
    for k in range(1, depth + 1):
        lv, rv = values[i - k], values[i + k]
        if not math.isfinite(lv) or sign * (center - lv) > 0:
            left += 1
        if not math.isfinite(rv) or sign * (center - rv) > 0:
            right += 1
    return left >= needed and right >= needed


def find_pivots(
    candles: Sequence[Candle],
    depth: int,
    vote: Optional[float] = None,
) -> list[Pivot]:
    """Swing pivots in index order.

    Args:
        candles: Time-ascending bars.
        depth: Neighbours checked on each side.
        vote: Optional relaxed mode; fraction of neighbours that must agree.

    Returns:
        Pivots sorted by index. A bar qualifying as both is recorded as High.
    """
    n = len(candles)
    if depth < 1 or n < 2 * depth + 1:
        return []

    highs, lows, closes = candle_arrays(candles)
    pivots: list[Pivot] = []
    for i in range(depth, n - depth):
        if not math.isfinite(closes[i]):
            continue
        if _dominates(highs, i, depth, 1.0, vote):
            pivots.append(Pivot(index=i, price=float(closes[i]), kind=PivotKind.HIGH))
        elif _dominates(lows, i, depth, -1.0, vote):
            pivots.append(Pivot(index=i, price=float(closes[i]), kind=PivotKind.LOW))
    return pivots


def peaks(pivots: Sequence[Pivot]) -> list[Pivot]:
    return [p for p in pivots if p.kind == PivotKind.HIGH]


def valleys(pivots: Sequence[Pivot]) -> list[Pivot]:
    return [p for p in pivots if p.kind == PivotKind.LOW]


def is_confirmed(pivot: Pivot, reference_index: int, confirm_bars: int) -> bool:
    """A pivot is confirmed once ``confirm_bars`` bars have printed after it."""
    return reference_index - pivot.index >= confirm_bars


def last_confirmed(
    pivots: Sequence[Pivot],
    kind: PivotKind,
    reference_index: int,
    confirm_bars: int,
    before: Optional[int] = None,
) -> Optional[Pivot]:
    """Most recent confirmed pivot of ``kind``, optionally strictly before an index."""
    for p in reversed(pivots):
        if p.kind != kind:
            continue
        if before is not None and p.index >= before:
            continue
        if is_confirmed(p, reference_index, confirm_bars):
            return p
    return None


def last_trend(closes: np.ndarray, bars: int = 3) -> int:
    """+1 if the last ``bars`` closes rose monotonically, -1 if they fell, else 0."""
    tail = closes[-(bars + 1):]
    if len(tail) < bars + 1 or not np.all(np.isfinite(tail)):
        return 0
    diffs = np.diff(tail)
    if np.all(diffs > 0):
        return 1
    if np.all(diffs < 0):
        return -1
    return 0
