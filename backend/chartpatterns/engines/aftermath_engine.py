"""
Chart Patterns — Aftermath Engine

Measures what price did after a pattern's confirmed breakout and rolls the
results up into per-type historical statistics.

Outcome rules:
  - no breakout               → no_breakout
  - measured-move target hit  → success (checked over ``target_horizon`` bars)
  - best horizon move in the expected direction beyond the partial threshold
                              → partial_success
  - anything else             → failure
  - no forward bars at all    → inconclusive
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from chartpatterns.config import DetectionConfig
from chartpatterns.models import (
    Aftermath,
    AftermathExample,
    AftermathOutcome,
    Candle,
    Direction,
    HistoricalCaseStats,
    PatternType,
    PriceMove,
)

log = structlog.get_logger(__name__)


def _nan_to_none(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return round(value, 2) if math.isfinite(value) else None


class AftermathEngine:
    """Forward-return measurement and historical aggregation."""

    def analyze(self, candidate, candles: Sequence[Candle], config: DetectionConfig) -> Aftermath:
        info = candidate.breakout
        if info is None or info.breakout_index is None:
            return Aftermath(
                base_index=candidate.range.end_index,
                breakout_confirmed=False,
                theoretical_target=candidate.breakout_target,
                outcome=AftermathOutcome.NO_BREAKOUT,
            )

        base = info.breakout_index
        last = len(candles) - 1
        closes = np.array([c.close for c in candles], dtype=float)
        highs = np.array([c.high for c in candles], dtype=float)
        lows = np.array([c.low for c in candles], dtype=float)
        base_close = closes[base]

        moves: dict[int, PriceMove] = {}
        for h in config.aftermath_horizons:
            j = base + h
            if j > last or not math.isfinite(base_close) or base_close == 0:
                continue
            if not math.isfinite(closes[j]):
                continue
            moves[h] = PriceMove(
                horizon=h,
                return_pct=round((closes[j] - base_close) / base_close * 100.0, 2),
                high=float(np.nanmax(highs[base + 1:j + 1])),
                low=float(np.nanmin(lows[base + 1:j + 1])),
            )

        up = info.direction == "up"
        target = candidate.breakout_target
        reached, bars_to_target = False, None
        if target is not None:
            for j in range(base + 1, min(last, base + config.target_horizon) + 1):
                hit = highs[j] >= target if up else lows[j] <= target
                if hit:
                    reached, bars_to_target = True, j - base
                    break

        if reached:
            outcome = AftermathOutcome.SUCCESS
        elif not moves:
            outcome = AftermathOutcome.INCONCLUSIVE
        else:
            if candidate.direction == Direction.BULLISH:
                sign = 1.0
            elif candidate.direction == Direction.BEARISH:
                sign = -1.0
            else:
                sign = 1.0 if up else -1.0
            best = max((m.return_pct for m in moves.values()), key=abs)
            if sign * best > config.partial_success_move_pct:
                outcome = AftermathOutcome.PARTIAL_SUCCESS
            else:
                outcome = AftermathOutcome.FAILURE

        return Aftermath(
            base_index=base,
            breakout_confirmed=True,
            breakout_index=base,
            price_moves=moves,
            theoretical_target=target,
            target_reached=reached,
            bars_to_target=bars_to_target,
            outcome=outcome,
        )

    # ──────────────────────────────────────────────
    # Aggregation
    # ──────────────────────────────────────────────

    def summarize(self, candidates: Sequence, max_examples: int = 5) -> dict[str, HistoricalCaseStats]:
        """Per-type statistics over candidates that carry an ``aftermath``."""
        rows = []
        for c in candidates:
            am = c.aftermath
            if am is None:
                continue
            m7, m14 = am.price_moves.get(7), am.price_moves.get(14)
            rows.append({
                "type": c.type.value,
                "outcome": am.outcome.value,
                "confirmed": am.breakout_confirmed,
                "ret7": m7.return_pct if m7 else np.nan,
                "ret14": m14.return_pct if m14 else np.nan,
                "start": c.range.start_index,
                "end": c.range.end_index,
                "start_time": c.range.start_time,
                "end_time": c.range.end_time,
                "breakout": am.breakout_index,
            })
        if not rows:
            return {}

        df = pd.DataFrame(rows)
        df["move"] = df["ret14"].fillna(df["ret7"])
        stats: dict[str, HistoricalCaseStats] = {}
        for ptype, group in df.groupby("type"):
            confirmed = group[group["confirmed"]]
            success_rate = None
            if len(confirmed):
                success_rate = round(float((confirmed["outcome"] == AftermathOutcome.SUCCESS.value).mean()), 2)

            ranked = confirmed.assign(abs_move=confirmed["move"].abs()).sort_values(
                "abs_move", ascending=False, na_position="last",
            )
            examples = [
                AftermathExample(
                    start_index=int(r["start"]),
                    end_index=int(r["end"]),
                    breakout_index=int(r["breakout"]) if pd.notna(r["breakout"]) else None,
                    start_time=r["start_time"] if pd.notna(r["start_time"]) else None,
                    end_time=r["end_time"] if pd.notna(r["end_time"]) else None,
                    return_pct=_nan_to_none(r["move"]),
                    outcome=AftermathOutcome(r["outcome"]),
                )
                for _, r in ranked.head(max_examples).iterrows()
            ]

            stats[ptype] = HistoricalCaseStats(
                pattern_type=PatternType(ptype),
                count=len(group),
                with_aftermath=len(confirmed),
                success_rate=success_rate,
                avg_move=_nan_to_none(confirmed["move"].mean()),
                avg_return_7=_nan_to_none(confirmed["ret7"].mean()),
                avg_return_14=_nan_to_none(confirmed["ret14"].mean()),
                median_return_7=_nan_to_none(confirmed["ret7"].median()),
                examples=examples,
            )
        log.debug("aftermath.summarized", types=len(stats), rows=len(rows))
        return stats
